"""Model handles and a cancellable event stream over LiteLLM."""

import queue
import re
import threading
from dataclasses import dataclass, field

from .errors import ConfigError, ModelError

PROVIDERS = ("openai", "openai-compatible", "anthropic", "gemini")

_LITELLM_PREFIX = {
    "openai": "openai",
    "openai-compatible": "openai",
    "anthropic": "anthropic",
    "gemini": "gemini",
}

THINKING_BUDGET_TOKENS = 12000

_REASONING_MODEL_RE = re.compile(r"^o[13]")

_POLL_INTERVAL = 0.05  # seconds between cancellation checks


@dataclass(frozen=True)
class Model:
    """Everything needed to call one provider/model through LiteLLM."""

    provider: str
    model_id: str
    api_key: str | None = None
    api_base: str | None = None

    @property
    def name(self) -> str:
        return f"{_LITELLM_PREFIX[self.provider]}/{self.model_id}"


@dataclass
class TextFragment:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str


@dataclass
class StepEnd:
    finish_reason: str | None
    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


def create_model(
    profile: dict, api_key: str | None, base_url: str | None = None
) -> Model:
    provider = profile.get("provider")
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")
    model_id = profile.get("model")
    if not model_id:
        raise ConfigError(f"profile {profile.get('name')!r} has no model")
    # Don't double up on a prefix the user already wrote.
    prefix = _LITELLM_PREFIX[provider] + "/"
    if model_id.startswith(prefix):
        model_id = model_id[len(prefix) :]
    return Model(
        provider=provider,
        model_id=model_id,
        api_key=api_key,
        api_base=base_url or profile.get("base_url") or None,
    )


def build_provider_options(provider: str, think: bool, model_id: str) -> dict:
    """Extra completion kwargs that turn on extended reasoning, if supported."""
    if not think:
        return {}
    if provider == "anthropic":
        return {
            "thinking": {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
        }
    if provider == "openai" and _REASONING_MODEL_RE.match(model_id):
        return {"reasoning_effort": "medium"}
    return {}


def _completion_kwargs(model: Model, messages, tools, stream, options) -> dict:
    kwargs = dict(model=model.name, messages=messages, stream=stream)
    if tools:
        kwargs["tools"] = tools
        kwargs["tool_choice"] = "auto"
    if model.api_key:
        kwargs["api_key"] = model.api_key
    if model.api_base:
        kwargs["api_base"] = model.api_base
    if options:
        kwargs.update(options)
    return kwargs


def _pump(kwargs: dict, out: queue.Queue, stop: threading.Event) -> None:
    """Run the blocking LiteLLM call on a helper thread, forwarding results."""
    import litellm

    litellm.suppress_debug_info = True
    try:
        response = litellm.completion(**kwargs)
        if not kwargs["stream"]:
            out.put(("item", response))
        else:
            for chunk in response:
                if stop.is_set():
                    close = getattr(response, "close", None)
                    if close is not None:
                        close()
                    return
                out.put(("item", chunk))
        out.put(("done", None))
    except Exception as e:
        out.put(("error", e))


def _events_from_message(message, finish_reason):
    content = getattr(message, "content", None) or ""
    if content:
        yield TextFragment(content)
    calls = []
    for tc in getattr(message, "tool_calls", None) or []:
        calls.append(
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            )
        )
    yield from calls
    yield StepEnd(finish_reason, content, calls)


class _StreamAssembler:
    """Rebuild text and tool calls from streamed deltas."""

    def __init__(self):
        self.text: list[str] = []
        self.calls: dict[int, dict] = {}
        self.finish_reason = None

    def feed(self, chunk) -> str:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return ""
        choice = choices[0]
        if getattr(choice, "finish_reason", None):
            self.finish_reason = choice.finish_reason
        delta = getattr(choice, "delta", None)
        if delta is None:
            return ""
        for tc in getattr(delta, "tool_calls", None) or []:
            index = getattr(tc, "index", None) or 0
            slot = self.calls.setdefault(
                index, {"id": None, "name": "", "arguments": ""}
            )
            if getattr(tc, "id", None):
                slot["id"] = tc.id
            fn = getattr(tc, "function", None)
            if fn is not None:
                if getattr(fn, "name", None):
                    slot["name"] = fn.name
                if getattr(fn, "arguments", None):
                    slot["arguments"] += fn.arguments
        piece = getattr(delta, "content", None) or ""
        if piece:
            self.text.append(piece)
        return piece

    def tool_calls(self) -> list[ToolCallRequest]:
        return [
            ToolCallRequest(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=slot["arguments"],
            )
            for index, slot in sorted(self.calls.items())
        ]


def call_llm(
    model: Model,
    messages: list,
    tools: list | None,
    *,
    stream: bool,
    cancel=None,
    options: dict | None = None,
):
    """Yield TextFragment, ToolCallRequest and a final StepEnd for one model step.

    Stops yielding early, without StepEnd, once cancel fires. Provider
    failures are raised as ModelError.
    """
    kwargs = _completion_kwargs(model, messages, tools, stream, options)
    results: queue.Queue = queue.Queue()
    stop = threading.Event()
    thread = threading.Thread(target=_pump, args=(kwargs, results, stop), daemon=True)
    thread.start()

    assembler = _StreamAssembler()
    try:
        while True:
            if cancel is not None and cancel.cancelled:
                return
            try:
                kind, payload = results.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if kind == "error":
                raise ModelError(f"LLM call failed: {payload}") from payload
            if kind == "done":
                break
            if not stream:
                choices = getattr(payload, "choices", None)
                if not choices:
                    raise ModelError("LLM call failed: provider returned no choices")
                choice = choices[0]
                yield from _events_from_message(choice.message, choice.finish_reason)
                return
            piece = assembler.feed(payload)
            if piece:
                yield TextFragment(piece)
    finally:
        stop.set()

    calls = assembler.tool_calls()
    yield from calls
    yield StepEnd(assembler.finish_reason, "".join(assembler.text), calls)
