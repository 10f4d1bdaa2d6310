"""Single-keypress confirmation before a command runs."""

import os
import sys
from typing import Callable

from . import fmt

YES = "yes"
NO = "no"
ALL = "all"
CANCEL = "cancel"

CTRL_C = "\x03"

KEYMAP = {
    "\r": YES,
    "\n": YES,
    "y": YES,
    "Y": YES,
    "n": NO,
    "N": NO,
    "a": ALL,
    "A": ALL,
    "c": CANCEL,
    "C": CANCEL,
    "\x1b": CANCEL,
}

LABELS = {YES: "Yes", NO: "No", ALL: "Yes to All", CANCEL: "Cancel"}


def read_keypress() -> str | None:
    """Read one keypress with the terminal in raw mode.

    Returns None on end of input. The previous terminal settings are
    restored before returning, whatever was pressed.
    """
    if sys.platform == "win32":
        import msvcrt

        return msvcrt.getwch()

    if not sys.stdin.isatty():
        return sys.stdin.read(1) or None

    import termios
    import tty

    fd = sys.stdin.fileno()
    old = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        # A single read picks up a whole escape sequence, so arrow keys
        # don't look like a bare Esc.
        data = os.read(fd, 8)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old)
    if not data:
        return None
    return data.decode("utf-8", errors="replace")


class ConfirmationGate:
    """Ask before each command; remembers "all" for the rest of the run."""

    def __init__(
        self,
        auto_confirm: bool = False,
        read_key: Callable[[], str | None] | None = None,
    ):
        self.auto_confirm = auto_confirm
        self.approve_all = False
        self._read_key = read_key or read_keypress

    def confirm(self, command: str) -> str:
        fmt.command(command)
        if self.auto_confirm or self.approve_all:
            return YES

        fmt.confirm_prompt()
        decision = self._await_decision()
        if decision == ALL:
            self.approve_all = True
        fmt.decision(LABELS[decision])
        return decision

    def _await_decision(self) -> str:
        while True:
            key = self._read_key()
            if key is None:
                return CANCEL
            if key == CTRL_C:
                raise KeyboardInterrupt
            decision = KEYMAP.get(key)
            if decision is not None:
                return decision
