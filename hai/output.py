"""Ordering of model text on stdout relative to prompts and spinners."""

import sys
from typing import Callable


def write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class OutputSequencer:
    """Write model text either as it arrives (stream) or in flushed blocks.

    In buffered mode nothing reaches the sink until flush(), which the agent
    loop calls before every confirmation prompt and when a run ends. Each
    buffered fragment is written exactly once. In stream mode flush() only
    terminates an unfinished line so prompts start on a fresh one.

    spinner_factory, when given, returns an object with start() and stop();
    it is shown while waiting on the model in buffered mode only.
    """

    def __init__(
        self,
        stream: bool,
        write: Callable[[str], None] | None = None,
        spinner_factory: Callable[[], object] | None = None,
    ):
        self.stream = stream
        self._write = write or write_stdout
        self._spinner_factory = spinner_factory
        self._spinner = None
        self._buffer: list[str] = []
        self._open_line = False

    def emit(self, text: str) -> None:
        if not text:
            return
        if self.stream:
            self._write(text)
            self._open_line = not text.endswith("\n")
        else:
            self._buffer.append(text)

    def flush(self) -> None:
        self.hide_loading()
        if self.stream:
            if self._open_line:
                self._write("\n")
                self._open_line = False
            return
        if not self._buffer:
            return
        text = "".join(self._buffer)
        self._buffer.clear()
        if not text.endswith("\n"):
            text += "\n"
        self._write(text)

    def finish(self) -> None:
        """Final flush when a run ends, however it ends."""
        self.flush()

    def show_loading(self) -> None:
        if self.stream or self._spinner_factory is None or self._spinner is not None:
            return
        self._spinner = self._spinner_factory()
        self._spinner.start()

    def hide_loading(self) -> None:
        if self._spinner is not None:
            self._spinner.stop()
            self._spinner = None
