"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

PREVIEW_LINES = 5


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Step structure ----------------------------------------------------------


def step_header(n: int, max_n: int) -> None:
    _console.print(Rule(f"Step {n}/{max_n}", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason == "stop" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Thinking..."):
    """Return a Rich Status that spins on stderr. Call start()/stop() on it."""
    return _console.status(label, spinner="dots")


def completion(steps: int, state: str) -> None:
    if state == "completed":
        _console.print(Text(f"  \u2713 Finished in {steps} steps", style="bold green"))
    else:
        _console.print(
            Text(f"  Finished after {steps} steps, state={state}", style="bold red")
        )


# -- Commands ----------------------------------------------------------------


def command(cmd: str) -> None:
    line = Text()
    line.append("\u25b6 ", style="bold cyan")
    line.append(cmd, style="bold")
    _console.print(line)


def confirm_prompt() -> None:
    line = Text()
    line.append("Execute? ", style="yellow")
    line.append("(Yes/no/all/cancel) ", style="dim")
    _console.print(line, end="")


def decision(label: str) -> None:
    styles = {"Yes": "green", "Yes to All": "green", "No": "red", "Cancel": "red"}
    _console.print(Text(label, style=styles.get(label, "dim")))


def command_output(output: str) -> None:
    """Preview at most PREVIEW_LINES lines of command output."""
    lines = output.rstrip("\n").split("\n")
    for line in lines[:PREVIEW_LINES]:
        _console.print(Text(line, style="dim"))
    if len(lines) > PREVIEW_LINES:
        _console.print(
            Text(f"... {len(lines) - PREVIEW_LINES} more lines", style="dim")
        )


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def stopped() -> None:
    _console.print()
    _console.print(Text("(stopped)", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def first_run(config_path: str) -> None:
    _console.print(Text("Welcome to hai!", style="yellow"))
    _console.print()
    _console.print("A configuration file has been created at:")
    _console.print(Text(f"  {config_path}", style="cyan"))
    _console.print()
    _console.print("Please edit the configuration file to set your API key.")
    _console.print()
    _api_key_tip()


def no_api_key(profile: str, config_path: str) -> None:
    _console.print(Text(f"No API key configured for profile: {profile}", style="red"))
    _console.print()
    _console.print("Please set your API key in the configuration file:")
    _console.print(Text(f"  {config_path}", style="cyan"))
    _console.print()
    _api_key_tip()


def _api_key_tip() -> None:
    _console.print(
        Text("Tip: Use $ENV_VAR syntax to reference environment variables:", style="dim")
    )
    _console.print(Text('  api_key = "$OPENAI_API_KEY"', style="dim"))
    _console.print()


def user_message(msg: str) -> None:
    _console.print(Text(f"> {msg}", style="green"))


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Press Esc to stop a response, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
