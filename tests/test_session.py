"""Tests for the library API: RunConfig, RunResult and Session."""

import dataclasses

import pytest

import hai
from hai import agent
from hai.llm import Model
from hai.session import RunConfig, RunResult, Session


MODEL = Model("openai", "gpt-4o", api_key="sk-test")


class FakeRunTurn:
    def __init__(self):
        self.calls = []

    def __call__(self, messages, config, *, gate=None, write=None, verbose=False):
        self.calls.append(
            {"messages": [dict(m) for m in messages], "config": config, "gate": gate}
        )
        messages.append({"role": "assistant", "content": f"answer {len(self.calls)}"})
        return RunResult(f"answer {len(self.calls)}", "completed", 1)


@pytest.fixture
def fake(monkeypatch):
    fake = FakeRunTurn()
    monkeypatch.setattr(agent, "run_turn", fake)
    return fake


class TestRunConfig:
    def test_defaults(self):
        config = RunConfig(model=MODEL)
        assert config.max_steps == 10
        assert config.timeout == 30
        assert config.auto_confirm is False
        assert config.stream is False
        assert config.chat is False
        assert config.options == {}

    def test_immutable(self):
        config = RunConfig(model=MODEL)
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_steps = 3

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError):
            RunConfig(model=MODEL, max_steps=0)


class TestRunResult:
    @pytest.mark.parametrize("state", ["completed", "exhausted", "cancelled"])
    def test_state_flags(self, state):
        result = RunResult("", state, 1)
        assert result.completed == (state == "completed")
        assert result.exhausted == (state == "exhausted")
        assert result.cancelled == (state == "cancelled")


class TestSession:
    def test_public_exports(self):
        assert hai.Session is Session
        assert hai.RunResult is RunResult

    def test_run_is_independent(self, fake, tmp_path):
        session = Session(MODEL, cwd=str(tmp_path))
        assert session.run("one").text == "answer 1"
        session.run("two")
        assert fake.calls[1]["messages"] == [{"role": "user", "content": "two"}]
        assert session.messages == []

    def test_run_keeps_last_messages(self, fake, tmp_path):
        session = Session(MODEL, cwd=str(tmp_path))
        session.run("one")
        assert [m["role"] for m in session.last_messages] == ["user", "assistant"]

    def test_ask_shares_history(self, fake, tmp_path):
        session = Session(MODEL, cwd=str(tmp_path))
        session.ask("one")
        session.ask("two")
        assert [m["content"] for m in fake.calls[1]["messages"]] == [
            "one",
            "answer 1",
            "two",
        ]

    def test_reset(self, fake, tmp_path):
        session = Session(MODEL, cwd=str(tmp_path), system_prompt="Be terse.")
        session.ask("one")
        session.reset()
        assert session.messages == [{"role": "system", "content": "Be terse."}]

    def test_system_prompt_leads(self, fake, tmp_path):
        session = Session(MODEL, cwd=str(tmp_path), system_prompt="Be terse.")
        session.run("hi")
        assert fake.calls[0]["messages"][0] == {
            "role": "system",
            "content": "Be terse.",
        }

    def test_settings_reach_config(self, fake, tmp_path):
        session = Session(
            MODEL,
            cwd=str(tmp_path),
            max_steps=3,
            timeout=5,
            auto_confirm=True,
            chat=False,
            options={"reasoning_effort": "medium"},
        )
        session.run("hi")
        config = fake.calls[0]["config"]
        assert config.max_steps == 3
        assert config.timeout == 5
        assert config.auto_confirm is True
        assert config.options == {"reasoning_effort": "medium"}
        assert config.cwd == str(tmp_path)

    def test_gate_factory_called_per_run(self, fake, tmp_path):
        made = []

        def factory():
            made.append(object())
            return made[-1]

        session = Session(MODEL, cwd=str(tmp_path), gate_factory=factory)
        session.run("a")
        session.run("b")
        assert [c["gate"] for c in fake.calls] == made
        assert len(made) == 2

    def test_no_factory_lets_run_turn_build_gate(self, fake, tmp_path):
        Session(MODEL, cwd=str(tmp_path)).run("a")
        assert fake.calls[0]["gate"] is None
