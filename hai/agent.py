import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path
from typing import Callable

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    ensure_config,
    get_api_key,
    get_base_url,
    get_prompt_template,
    global_config_dir,
    global_config_path,
    load_config,
    resolve_profile,
)
from .confirm import ConfirmationGate
from .errors import AgentError, ModelError
from .inputs import process_input
from .keyboard import CancelToken, KeyboardListener
from .llm import (
    StepEnd,
    TextFragment,
    ToolCallRequest,
    build_provider_options,
    call_llm,
    create_model,
)
from .output import OutputSequencer
from .session import CANCELLED, COMPLETED, EXHAUSTED, RunConfig, RunResult
from .shell_info import get_system_context, merge_system_messages
from .tools import SHELL_TOOL, ExecutionOutcome, ShellTool

MAX_ARG_LOG = 1000

SKIPPED_CONTENT = "error: skipped because the run was cancelled"


@dataclass
class Hooks:
    """Optional callbacks fired by the agent loop. Return values are ignored."""

    on_before_tool_use: Callable[[], None] | None = None
    on_show_loading: Callable[[], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_cancel: Callable[[], None] | None = None


def _assistant_message(text: str, requests: list[ToolCallRequest]) -> dict:
    msg: dict = {"role": "assistant", "content": text or None}
    if requests:
        msg["tool_calls"] = [
            {
                "id": r.id,
                "type": "function",
                "function": {"name": r.name, "arguments": r.arguments},
            }
            for r in requests
        ]
    elif not text:
        msg["content"] = ""
    return msg


def _tool_message(call_id: str, content: str) -> dict:
    return {"role": "tool", "tool_call_id": call_id, "content": content}


def handle_tool_call(
    request: ToolCallRequest, shell: ShellTool, verbose: bool
) -> tuple[dict, ExecutionOutcome]:
    """Run a single tool call and return (tool_msg, outcome).

    Malformed calls never reach the shell; they come back as failures so
    the model can correct itself.
    """
    try:
        parsed_args = json.loads(request.arguments or "{}")
    except (json.JSONDecodeError, TypeError) as e:
        parsed_args = None
        outcome = ExecutionOutcome(
            False, error=f"invalid JSON in tool arguments: {e}", kind="invalid"
        )
    else:
        command = parsed_args.get("command") if isinstance(parsed_args, dict) else None
        if request.name != SHELL_TOOL["function"]["name"]:
            outcome = ExecutionOutcome(
                False, error=f"unknown tool: {request.name!r}", kind="invalid"
            )
        elif not isinstance(command, str) or not command.strip():
            outcome = ExecutionOutcome(
                False, error="missing 'command' argument", kind="invalid"
            )
        else:
            outcome = None

    t0 = time.monotonic()
    if outcome is None:
        outcome = shell.invoke(parsed_args["command"])
    elapsed = time.monotonic() - t0

    content = outcome.to_content()
    if verbose:
        if outcome.success:
            fmt.tool_result(request.name, elapsed, content[:MAX_ARG_LOG])
        else:
            fmt.tool_error(request.name, outcome.error or "")

    return _tool_message(request.id, content), outcome


def run_agent_loop(
    messages: list,
    config: RunConfig,
    *,
    gate,
    cancel: CancelToken,
    hooks: Hooks | None = None,
    sequencer: OutputSequencer | None = None,
    listener: KeyboardListener | None = None,
    verbose: bool = False,
) -> RunResult:
    """Alternate model steps and shell commands until the model stops asking.

    Mutates `messages` in place: each completed step appends one assistant
    message, followed by one tool message per tool call in the order the
    model issued them. A step aborted by cancellation appends nothing.

    Ends as completed (no tool calls), exhausted (config.max_steps model
    calls made), or cancelled (cancel fired by Esc, by the confirmation
    prompt, or by the caller). A provider failure fires hooks.on_error and
    raises ModelError.
    """
    hooks = hooks or Hooks()
    sequencer = sequencer or OutputSequencer(config.stream)
    tools = None if config.chat else [SHELL_TOOL]

    def _before_tool_use() -> None:
        sequencer.flush()
        if hooks.on_before_tool_use is not None:
            hooks.on_before_tool_use()

    shell = ShellTool(
        gate,
        cwd=config.cwd,
        timeout=config.timeout,
        cancel=cancel,
        listener=listener,
        on_before_tool_use=_before_tool_use,
        on_cancel=cancel.cancel,
    )

    steps = 0
    text = ""
    last_text = ""

    def _finish(state: str, final_text: str) -> RunResult:
        sequencer.finish()
        if verbose:
            fmt.completion(steps, state)
        if state == CANCELLED and hooks.on_cancel is not None:
            hooks.on_cancel()
        return RunResult(final_text, state, steps)

    try:
        while steps < config.max_steps:
            if cancel.cancelled:
                return _finish(CANCELLED, last_text)
            steps += 1
            if verbose:
                fmt.step_header(steps, config.max_steps)

            if config.chat:
                outgoing = messages
            else:
                outgoing = merge_system_messages(messages, get_system_context())

            sequencer.show_loading()
            fragments: list[str] = []
            requests: list[ToolCallRequest] = []
            end: StepEnd | None = None
            t0 = time.monotonic()
            try:
                for event in call_llm(
                    config.model,
                    outgoing,
                    tools,
                    stream=config.stream,
                    cancel=cancel,
                    options=config.options,
                ):
                    if isinstance(event, TextFragment):
                        fragments.append(event.text)
                        sequencer.emit(event.text)
                    elif isinstance(event, ToolCallRequest):
                        requests.append(event)
                    elif isinstance(event, StepEnd):
                        end = event
            except ModelError as e:
                sequencer.finish()
                if hooks.on_error is not None:
                    hooks.on_error(e)
                raise

            text = "".join(fragments)
            if end is None or cancel.cancelled:
                return _finish(CANCELLED, text)
            if verbose:
                fmt.llm_timing(time.monotonic() - t0, end.finish_reason)

            messages.append(_assistant_message(text, requests))
            if text:
                last_text = text

            if not requests:
                return _finish(COMPLETED, text)

            # Malformed calls never reach the shell tool's flush hook.
            sequencer.flush()
            for request in requests:
                if cancel.cancelled:
                    messages.append(_tool_message(request.id, SKIPPED_CONTENT))
                    continue
                tool_msg, _ = handle_tool_call(request, shell, verbose)
                messages.append(tool_msg)

            if cancel.cancelled:
                return _finish(CANCELLED, last_text)
            if hooks.on_show_loading is not None:
                hooks.on_show_loading()

        return _finish(EXHAUSTED, last_text)
    finally:
        sequencer.finish()


def run_turn(
    messages: list,
    config: RunConfig,
    *,
    gate=None,
    write=None,
    verbose: bool = False,
) -> RunResult:
    """Run the loop once with a fresh cancel token, Esc listener and gate."""
    cancel = CancelToken()
    if gate is None:
        gate = ConfirmationGate(auto_confirm=config.auto_confirm)
    listener = KeyboardListener(cancel)
    sequencer = OutputSequencer(
        config.stream, write=write, spinner_factory=fmt.llm_spinner
    )
    hooks = Hooks(on_cancel=fmt.stopped)

    listener.start()
    try:
        return run_agent_loop(
            messages,
            config,
            gate=gate,
            cancel=cancel,
            hooks=hooks,
            sequencer=sequencer,
            listener=listener,
            verbose=verbose,
        )
    finally:
        listener.stop()


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="hai",
        usage="%(prog)s [options] [message]",
        description="A terminal assistant that answers questions and, with your "
        "consent, runs shell commands. Press Esc to stop a response.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "message", nargs="?", default=None, help="The message for the model."
    )
    parser.add_argument(
        "-i",
        "--interact",
        action="store_true",
        help="Start an interactive session (after answering the message, if any).",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Run commands without asking for confirmation.",
    )
    parser.add_argument(
        "--chat",
        action="store_true",
        help="Plain chat: the model cannot run commands.",
    )
    parser.add_argument(
        "-p",
        "--prompt",
        default=None,
        metavar="NAME",
        help="Wrap the message in a prompt template from the config file.",
    )
    parser.add_argument(
        "--profile",
        default=None,
        metavar="NAME",
        help="Profile to use (default: the profile marked default, else the first).",
    )
    parser.add_argument(
        "-f",
        "--file",
        action="append",
        default=[],
        metavar="PATH",
        help="Include a file in the message (repeatable).",
    )
    parser.add_argument(
        "--think",
        action=argparse.BooleanOptionalAction,
        default=_UNSET,
        help="Enable extended reasoning where the model supports it.",
    )
    parser.add_argument(
        "--stream",
        action=argparse.BooleanOptionalAction,
        default=_UNSET,
        help="Stream the response as it is generated.",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum model calls per run (default: 10).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Per-command timeout in seconds (default: 30).",
    )
    parser.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="Config file to use instead of ~/.config/hai/config.toml.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Print step and timing diagnostics on stderr.",
    )
    parser.add_argument(
        "--color",
        action=argparse.BooleanOptionalAction,
        default=_UNSET,
        help="Force ANSI color on or off.",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("hai")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.yes and args.chat:
        parser.error("-y and --chat cannot be used together")
    if args.max_steps is not _UNSET and args.max_steps < 1:
        parser.error("--max-steps must be at least 1")
    if args.timeout is not _UNSET and args.timeout <= 0:
        parser.error("--timeout must be positive")

    try:
        code = _run_main(args, parser)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        print(file=sys.stderr)
        sys.exit(130)
    sys.exit(code)


def _stdin_is_tty() -> bool:
    return sys.stdin is not None and sys.stdin.isatty()


def _run_main(args, parser) -> int:
    config_path = (
        Path(args.config).expanduser() if args.config else global_config_path()
    )
    created = ensure_config(config_path)
    config = load_config(Path.cwd(), config_path)
    profile = resolve_profile(config, args.profile)

    is_tty = sys.stdout.isatty()
    apply_config_to_args(args, config, profile, is_tty=is_tty)
    fmt.init(color=args.color, no_color=not args.color)

    api_key = get_api_key(profile)
    if not api_key:
        if created:
            fmt.first_run(str(config_path))
        else:
            fmt.no_api_key(profile["name"], str(config_path))
        return 1

    # Without a terminal on stdin nobody can answer a confirmation prompt.
    if args.mode == "auto" and not args.yes and not _stdin_is_tty():
        args.mode = "chat"

    model = create_model(profile, api_key, get_base_url(profile))
    options = build_provider_options(profile["provider"], args.think, model.model_id)
    template = get_prompt_template(config, args.prompt) if args.prompt else None
    full, display = process_input(args.message or "", template, args.file)

    if args.verbose:
        fmt.model_info(f"Profile {profile['name']}: {model.name}, mode={args.mode}")

    run_config = RunConfig(
        model=model,
        max_steps=args.max_steps,
        timeout=args.timeout,
        auto_confirm=args.yes,
        cwd=os.getcwd(),
        stream=args.stream,
        chat=args.mode == "chat",
        options=options,
    )

    if not full and not args.interact:
        if not is_tty:
            fmt.warning("No message provided. See usage below:")
            parser.print_help()
            return 0
        fmt.info("Entering interactive mode...")

    if args.interact or not full:
        if not is_tty:
            fmt.error("interactive mode needs a terminal")
            return 1
        repl_loop(
            run_config,
            initial=full or None,
            initial_display=display or None,
            verbose=args.verbose,
        )
        return 0

    result = run_turn(
        [{"role": "user", "content": full}], run_config, verbose=args.verbose
    )
    if result.exhausted:
        fmt.warning(f"step budget exhausted after {result.steps} model calls.")
        return 2
    return 0


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a new conversation\n"
        "  /exit, /quit       Exit the REPL\n"
        "Press Esc to stop a response, Ctrl-C to quit immediately."
    )


def _repl_clear(messages: list) -> None:
    """Clear conversation history, keeping only the leading system messages."""
    leading = []
    for msg in messages:
        if msg.get("role") == "system":
            leading.append(msg)
        else:
            break

    dropped = len(messages) - len(leading)
    messages[:] = leading
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_ask(messages: list, line: str, config: RunConfig, verbose: bool) -> None:
    """Run one REPL turn. A provider failure drops the whole turn from history."""
    start = len(messages)
    messages.append({"role": "user", "content": line})
    try:
        result = run_turn(messages, config, verbose=verbose)
    except ModelError as e:
        del messages[start:]
        fmt.error(str(e))
        return
    if result.exhausted:
        fmt.warning("step budget reached for this message.")


def repl_loop(
    config: RunConfig,
    *,
    initial: str | None = None,
    initial_display: str | None = None,
    verbose: bool = False,
    messages: list | None = None,
) -> list:
    """Interactive read-eval-print loop. Returns the conversation history."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = global_config_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "> ")])

    fmt.repl_banner()
    messages = messages if messages is not None else []

    if initial:
        fmt.user_message(initial_display or initial)
        _repl_ask(messages, initial, config, verbose)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only intercept known commands; unknown /foo passes through
        if line in ("/exit", "/quit"):
            break

        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(messages)
            continue

        _repl_ask(messages, line, config, verbose)

    fmt.info("Bye!")
    return messages


if __name__ == "__main__":
    main()
