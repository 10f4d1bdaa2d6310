"""The shell tool: schema, command executor, and the confirm-then-run wrapper."""

import os
import subprocess
import sys
import threading
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path

from . import fmt

SHELL_TOOL = {
    "type": "function",
    "function": {
        "name": "shell",
        "description": (
            "Execute a shell command in the current directory. Use this when the user "
            "needs to run commands, check files, build projects, etc. Use commands "
            "appropriate for the current OS and shell. IMPORTANT: Use non-interactive "
            "commands only. Avoid commands that require user input (like vim, nano, "
            "less, or interactive prompts). Use flags like -y or --yes for "
            "auto-confirmation when available."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
            },
            "required": ["command"],
        },
    },
}

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
STDERR_LABEL = b"\n[stderr]\n"

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_READER_JOIN_TIMEOUT = 2


@dataclass
class ExecutionOutcome:
    """Result of one shell tool invocation, as reported back to the model.

    kind is one of: ok, failed, timeout, aborted, spawn_error, rejected,
    cancelled, invalid.
    """

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    kind: str = "ok"

    def to_content(self) -> str:
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"error: {self.error}\n{self.output}"
        return f"error: {self.error}"


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable; give up


class _Capture:
    """Drain one pipe, keeping at most MAX_OUTPUT_BYTES but counting everything."""

    def __init__(self, pipe):
        self.pipe = pipe
        self.chunks: list[bytes] = []
        self.kept = 0
        self.total = 0
        self.newlines = 0
        self.thread = threading.Thread(target=self._read, daemon=True)

    def _read(self) -> None:
        try:
            while True:
                chunk = self.pipe.read(4096)
                if not chunk:
                    break
                self.total += len(chunk)
                self.newlines += chunk.count(b"\n")
                if self.kept >= MAX_OUTPUT_BYTES:
                    continue  # keep draining to prevent pipe backpressure
                piece = chunk[: MAX_OUTPUT_BYTES - self.kept]
                self.chunks.append(piece)
                self.kept += len(piece)
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


def combine_output(
    stdout: bytes,
    stderr: bytes,
    stdout_total: int | None = None,
    stderr_total: int | None = None,
    total_newlines: int | None = None,
) -> str:
    """Join stdout and a labelled stderr, capped at MAX_OUTPUT_BYTES.

    The totals describe the full streams when the captured bytes were
    already clipped; they default to the captured bytes themselves.
    """
    combined = stdout
    if stderr or stderr_total:
        combined += STDERR_LABEL + stderr
    if stdout_total is None:
        stdout_total = len(stdout)
    if stderr_total is None:
        stderr_total = len(stderr)
    total = stdout_total + (len(STDERR_LABEL) + stderr_total if stderr_total else 0)
    if total_newlines is None:
        total_newlines = combined.count(b"\n")

    if total <= MAX_OUTPUT_BYTES:
        return combined.decode("utf-8", errors="replace")

    kept = combined[:MAX_OUTPUT_BYTES]
    omitted_bytes = total - len(kept)
    omitted_lines = total_newlines - kept.count(b"\n")
    return (
        kept.decode("utf-8", errors="replace")
        + f"\n[output truncated: {omitted_bytes} bytes, {omitted_lines} lines omitted]"
    )


class _OutcomeSlot:
    """First-wins resolution between exit, timeout, and abort."""

    def __init__(self):
        self._lock = threading.Lock()
        self.value: str | None = None

    def resolve(self, value: str) -> bool:
        with self._lock:
            if self.value is not None:
                return False
            self.value = value
            return True


def execute_command(
    command: str, cwd: str, timeout: float | None = None, cancel=None
) -> ExecutionOutcome:
    """Run a shell string via sh -c (Unix) or cmd.exe /c (Windows).

    Never raises for command-level failures: spawn errors, non-zero exits,
    timeouts, and user aborts all come back as a failed ExecutionOutcome
    with whatever output was captured.
    """
    if cancel is not None and cancel.cancelled:
        return ExecutionOutcome(False, error="command aborted by user", kind="aborted")

    if not Path(cwd).is_dir():
        return ExecutionOutcome(
            False, error=f"working directory does not exist: {cwd}", kind="spawn_error"
        )

    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        return ExecutionOutcome(False, error=str(e), kind="spawn_error")

    out = _Capture(proc.stdout)
    err = _Capture(proc.stderr)
    out.thread.start()
    err.thread.start()

    slot = _OutcomeSlot()

    def _abort() -> None:
        if slot.resolve("aborted"):
            _kill_process_tree(proc)

    remove_callback = cancel.add_callback(_abort) if cancel is not None else None
    try:
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            if slot.resolve("timeout"):
                _kill_process_tree(proc)
            else:
                proc.wait()
        else:
            slot.resolve("exited")
    except BaseException:
        _kill_process_tree(proc)
        raise
    finally:
        if remove_callback is not None:
            remove_callback()

    out.thread.join(timeout=_READER_JOIN_TIMEOUT)
    err.thread.join(timeout=_READER_JOIN_TIMEOUT)
    proc.stdout.close()
    proc.stderr.close()

    output = combine_output(
        out.data,
        err.data,
        stdout_total=out.total,
        stderr_total=err.total,
        total_newlines=out.newlines + err.newlines + (2 if err.total else 0),
    )

    if slot.value == "aborted":
        return ExecutionOutcome(
            False, output=output, error="command aborted by user", kind="aborted"
        )
    if slot.value == "timeout":
        return ExecutionOutcome(
            False,
            output=output,
            error=f"command timed out after {timeout:g}s",
            kind="timeout",
        )
    if proc.returncode != 0:
        return ExecutionOutcome(
            False,
            output=output,
            error=f"command exited with code {proc.returncode}",
            exit_code=proc.returncode,
            kind="failed",
        )
    return ExecutionOutcome(True, output=output or "(no output)", exit_code=0)


class ShellTool:
    """Gate every command through a ConfirmationGate before running it."""

    def __init__(
        self,
        gate,
        *,
        cwd: str,
        timeout: float | None,
        cancel=None,
        listener=None,
        on_before_tool_use=None,
        on_cancel=None,
    ):
        self.gate = gate
        self.cwd = cwd
        self.timeout = timeout
        self.cancel = cancel
        self.listener = listener
        self.on_before_tool_use = on_before_tool_use
        self.on_cancel = on_cancel

    def invoke(self, command: str) -> ExecutionOutcome:
        if self.on_before_tool_use is not None:
            self.on_before_tool_use()

        paused = self.listener.paused() if self.listener is not None else nullcontext()
        with paused:
            decision = self.gate.confirm(command)

        if decision == "no":
            return ExecutionOutcome(
                False, error="user rejected the command", kind="rejected"
            )
        if decision == "cancel":
            if self.on_cancel is not None:
                self.on_cancel()
            return ExecutionOutcome(False, error="user cancelled", kind="cancelled")

        outcome = execute_command(command, self.cwd, self.timeout, self.cancel)
        if outcome.output:
            fmt.command_output(outcome.output)
        return outcome
