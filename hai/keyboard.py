"""Run cancellation: a one-shot CancelToken plus an Esc-key listener.

Esc cancels the active run. Ctrl-C is left to the terminal so it still
arrives as SIGINT (KeyboardInterrupt) and ends the process.
"""

import os
import select
import sys
import threading
from contextlib import contextmanager
from typing import Callable

ESC = "\x1b"

_POLL_INTERVAL = 0.05  # seconds between stdin polls


class CancelToken:
    """A one-shot cancellation signal shared by everything in a single run."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Fire the token. Returns True only for the call that fired it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class KeyboardListener:
    """Watch stdin for a bare Esc while a run is in flight.

    Puts the terminal in cbreak mode (signals stay enabled) and polls stdin
    on a daemon thread. Does nothing when stdin is not a terminal.
    """

    def __init__(self, token: CancelToken, on_interrupt: Callable[[], None] | None = None):
        self.token = token
        self.on_interrupt = on_interrupt
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._saved_attrs = None

    @property
    def active(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if self._thread is not None or not _stdin_is_tty():
            return
        self._stop.clear()
        if sys.platform != "win32":
            import termios
            import tty

            fd = sys.stdin.fileno()
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setcbreak(fd)
            target = self._watch_posix
        else:
            target = self._watch_windows
        self._thread = threading.Thread(target=target, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop listening and restore the terminal. Safe to call repeatedly."""
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=1)
        self._thread = None
        if self._saved_attrs is not None:
            import termios

            termios.tcsetattr(sys.stdin.fileno(), termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None

    @contextmanager
    def paused(self):
        """Hand stdin to someone else (the confirmation prompt) for a while."""
        was_active = self.active
        self.stop()
        try:
            yield
        finally:
            if was_active and not self.token.cancelled:
                self.start()

    def _fire(self) -> None:
        if self.token.cancel() and self.on_interrupt is not None:
            self.on_interrupt()

    def _watch_posix(self) -> None:
        fd = sys.stdin.fileno()
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([fd], [], [], _POLL_INTERVAL)
                if not ready:
                    continue
                data = os.read(fd, 1)
            except (OSError, ValueError):
                return
            if not data:
                return
            if data.decode(errors="ignore") != ESC:
                continue
            # Arrow keys and friends start with Esc too; swallow the rest.
            if select.select([fd], [], [], _POLL_INTERVAL)[0]:
                os.read(fd, 16)
                continue
            self._fire()

    def _watch_windows(self) -> None:
        import msvcrt

        while not self._stop.is_set():
            if not msvcrt.kbhit():
                self._stop.wait(_POLL_INTERVAL)
                continue
            ch = msvcrt.getwch()
            if ch in ("\x00", "\xe0"):
                msvcrt.getwch()  # second half of a special key
                continue
            if ch == ESC:
                self._fire()


def _stdin_is_tty() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False
