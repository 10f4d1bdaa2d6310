"""Describe the host OS and shell to the model."""

import os
import sys
from typing import NamedTuple

TOOL_GUIDANCE = (
    "IMPORTANT: Only use the shell tool when you need to interact with the system "
    "(e.g., list files, run builds, check status, execute programs). For knowledge "
    "questions, explanations, or conversations, respond directly WITHOUT using any tools."
)


class ShellInfo(NamedTuple):
    os: str
    shell: str


def get_shell_info() -> ShellInfo:
    if sys.platform == "win32":
        shell = "PowerShell" if os.environ.get("PSModulePath") else "cmd.exe"
        return ShellInfo("Windows", shell)
    if sys.platform == "darwin":
        return ShellInfo("macOS", os.environ.get("SHELL") or "zsh")
    return ShellInfo("Linux", os.environ.get("SHELL") or "bash")


def get_system_context() -> str:
    info = get_shell_info()
    if info.os == "Windows":
        return (
            f"{TOOL_GUIDANCE}\n\n"
            f"Environment: {info.os}, Shell: {info.shell}.\n"
            "- Use Windows commands (dir, cd, type, copy, del, etc.)\n"
            "- Do NOT use Unix commands (ls, pwd, cat, cp, rm, etc.)\n"
            "- For PowerShell, you can also use cmdlets like Get-ChildItem, "
            "Get-Location, etc."
        )
    return (
        f"{TOOL_GUIDANCE}\n\n"
        f"Environment: {info.os}, Shell: {info.shell}. "
        "Use appropriate commands for this shell."
    )


def merge_system_messages(messages: list, context: str) -> list:
    """Return the messages to send, with context folded into one system message.

    The first caller-supplied system message is appended after the context;
    any further system messages are dropped. messages itself is not modified.
    """
    existing = None
    rest = []
    for msg in messages:
        if msg.get("role") == "system":
            if existing is None:
                existing = msg.get("content") or ""
            continue
        rest.append(msg)
    content = f"{context}\n\n{existing}" if existing else context
    return [{"role": "system", "content": content}] + rest
