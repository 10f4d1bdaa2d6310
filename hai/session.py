"""Public library API for hai: run settings, results, and the Session class."""

import copy
import os
from dataclasses import dataclass, field

from .llm import Model

COMPLETED = "completed"
EXHAUSTED = "exhausted"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one agent run."""

    model: Model
    max_steps: int = 10
    timeout: float | None = 30
    auto_confirm: bool = False
    cwd: str = "."
    stream: bool = False
    chat: bool = False
    options: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")


@dataclass
class RunResult:
    """Result of a run: the final step's text, how the run ended, model calls made."""

    text: str
    state: str
    steps: int

    @property
    def completed(self) -> bool:
        return self.state == COMPLETED

    @property
    def exhausted(self) -> bool:
        return self.state == EXHAUSTED

    @property
    def cancelled(self) -> bool:
        return self.state == CANCELLED


class Session:
    """Programmatic interface to the hai agent loop.

    Call .run() for single-shot questions or .ask() for multi-turn
    conversations. Commands are confirmed through a ConfirmationGate
    built by gate_factory (a fresh one per run); pass auto_confirm=True
    to run commands without asking.
    """

    def __init__(
        self,
        model: Model,
        *,
        max_steps: int = 10,
        timeout: float | None = 30,
        auto_confirm: bool = False,
        cwd: str | None = None,
        stream: bool = False,
        chat: bool = False,
        options: dict | None = None,
        system_prompt: str | None = None,
        gate_factory=None,
        write=None,
        verbose: bool = False,
    ):
        self.config = RunConfig(
            model=model,
            max_steps=max_steps,
            timeout=timeout,
            auto_confirm=auto_confirm,
            cwd=cwd or os.getcwd(),
            stream=stream,
            chat=chat,
            options=dict(options or {}),
        )
        self.system_prompt = system_prompt
        self.gate_factory = gate_factory
        self.write = write
        self.verbose = verbose
        self.messages: list[dict] = self._initial_messages()
        self.last_messages: list[dict] = []

    def _initial_messages(self) -> list[dict]:
        if self.system_prompt is None:
            return []
        return [{"role": "system", "content": self.system_prompt}]

    def _run(self, messages: list[dict]) -> RunResult:
        from .agent import run_turn

        gate = self.gate_factory() if self.gate_factory is not None else None
        return run_turn(
            messages,
            self.config,
            gate=gate,
            write=self.write,
            verbose=self.verbose,
        )

    def run(self, message: str) -> RunResult:
        """Single-shot: run a message with fresh history. Each call is independent.

        The history of the run is kept in last_messages.
        """
        messages = self._initial_messages()
        messages.append({"role": "user", "content": message})
        result = self._run(messages)
        self.last_messages = copy.deepcopy(messages)
        return result

    def ask(self, message: str) -> RunResult:
        """Conversational: share history across messages (like the REPL)."""
        self.messages.append({"role": "user", "content": message})
        return self._run(self.messages)

    def reset(self) -> None:
        """Forget the conversation. Next ask() starts fresh."""
        self.messages = self._initial_messages()
