"""Assemble the user message from arguments, piped stdin, files and templates."""

import sys
from pathlib import Path

from .errors import ConfigError

INPUT_PLACEHOLDER = "{{input}}"


def read_stdin(stream=None) -> str:
    """Return piped stdin, stripped; empty when stdin is a terminal."""
    stream = stream if stream is not None else sys.stdin
    if stream is None or stream.isatty():
        return ""
    return stream.read().strip()


def read_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"failed to read file: {path} ({e})") from e


def merge_files(paths: list[str]) -> str:
    """Concatenate files as '=== name ===' sections."""
    return "\n".join(f"=== {Path(p).name} ===\n{read_file(p)}" for p in paths)


def merge_files_for_display(paths: list[str]) -> str:
    return " ".join(f"[file: {Path(p).name}]" for p in paths)


def fill_template(template: str, text: str) -> str:
    """Put text at the first {{input}} in template, or after it."""
    if not text:
        return template
    if not template:
        return text
    if INPUT_PLACEHOLDER in template:
        return template.replace(INPUT_PLACEHOLDER, text, 1)
    return f"{template}\n\n{text}"


def _shorten(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def process_input(
    message: str,
    template: str | None,
    paths: list[str],
    stdin_text: str | None = None,
) -> tuple[str, str]:
    """Build (full, display) versions of the message.

    Piped input and files are first filled into the message, then the
    result is filled into the -p template. The display version names files
    instead of inlining them and shortens long piped input.
    """
    piped = read_stdin() if stdin_text is None else stdin_text
    file_text = merge_files(paths)
    file_display = merge_files_for_display(paths)

    if piped and file_text:
        external = f"{piped}\n\n{file_text}"
    else:
        external = piped or file_text

    if piped and file_display:
        external_display = f"{_shorten(piped, 50)} {file_display}"
    elif piped:
        external_display = _shorten(piped, 100)
    else:
        external_display = file_display

    full, display = message, message
    if external:
        full = fill_template(message, external)
        display = fill_template(message, external_display)

    if template:
        return fill_template(template, full), fill_template(template, display)
    return full, display
