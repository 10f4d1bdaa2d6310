"""Tests for hai.config: TOML loading, merging, validation, and CLI integration."""

import argparse
import tomllib

import pytest

from hai.config import (
    _UNSET,
    _validate_config,
    apply_config_to_args,
    ensure_config,
    generate_config,
    get_api_key,
    get_base_url,
    get_prompt_template,
    global_config_dir,
    global_config_path,
    load_config,
    resolve_profile,
)
from hai.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


PROFILE = """
[[profiles]]
name = "gpt4"
provider = "openai"
model = "gpt-4o"
"""


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "think": _UNSET,
        "stream": _UNSET,
        "max_steps": _UNSET,
        "timeout": _UNSET,
        "color": _UNSET,
        "chat": False,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for var in (
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "HAI_TEST_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Locations and first run
# ---------------------------------------------------------------------------


class TestLocations:
    def test_xdg_config_home(self, tmp_path):
        assert global_config_dir() == tmp_path / "xdg" / "hai"
        assert global_config_path() == tmp_path / "xdg" / "hai" / "config.toml"

    def test_home_fallback(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME")
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        assert global_config_dir() == tmp_path / "home" / ".config" / "hai"


class TestEnsureConfig:
    def test_creates_once(self, tmp_path):
        path = tmp_path / "cfg" / "config.toml"
        assert ensure_config(path) is True
        assert path.read_text() == generate_config()
        assert ensure_config(path) is False

    def test_existing_file_untouched(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("# mine\n")
        assert ensure_config(path) is False
        assert path.read_text() == "# mine\n"


class TestGenerateConfig:
    def test_template_is_valid(self, capsys):
        config = _validate_config(tomllib.loads(generate_config()), "template")
        assert capsys.readouterr().err == ""
        assert [p["name"] for p in config["profiles"]] == ["gpt4", "claude", "local"]
        assert set(config["prompts"]) == {"translate", "explain", "code"}
        assert config["pipe"] == {"stream": False, "color": False}

    def test_default_profile_is_gpt4(self):
        config = _validate_config(tomllib.loads(generate_config()), "template")
        assert resolve_profile(config)["name"] == "gpt4"

    def test_local_profile_has_key_and_url(self):
        config = _validate_config(tomllib.loads(generate_config()), "template")
        local = resolve_profile(config, "local")
        assert get_api_key(local) == "ollama"
        assert get_base_url(local) == "http://localhost:11434/v1"


# ---------------------------------------------------------------------------
# Loading and merging
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_missing_files(self, tmp_path):
        config = load_config(tmp_path / "project", tmp_path / "none.toml")
        assert config == {"config_path": tmp_path / "none.toml"}

    def test_default_global_path(self, tmp_path):
        _write_toml(global_config_path(), "max_steps = 4\n" + PROFILE)
        config = load_config(tmp_path / "project")
        assert config["max_steps"] == 4
        assert config["config_path"] == global_config_path()

    def test_project_overrides_global(self, tmp_path):
        cfg = tmp_path / "global.toml"
        _write_toml(cfg, "max_steps = 5\ntimeout = 10\n" + PROFILE)
        _write_toml(tmp_path / "project" / "hai.toml", "max_steps = 7\n")
        config = load_config(tmp_path / "project", cfg)
        assert config["max_steps"] == 7
        assert config["timeout"] == 10
        assert config["profiles"][0]["name"] == "gpt4"

    def test_project_same_as_global_loaded_once(self, tmp_path):
        cfg = tmp_path / "hai.toml"
        _write_toml(cfg, "max_steps = 5\n")
        assert load_config(tmp_path, cfg)["max_steps"] == 5

    def test_invalid_toml(self, tmp_path):
        cfg = tmp_path / "bad.toml"
        _write_toml(cfg, "max_steps = \n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path / "project", cfg)

    def test_unknown_key_warns_and_is_dropped(self, tmp_path, capsys):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, "colour = true\n")
        config = load_config(tmp_path / "project", cfg)
        assert "colour" not in config
        assert "unknown config key 'colour'" in capsys.readouterr().err

    def test_unknown_profile_key_warns(self, tmp_path, capsys):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, PROFILE + 'temperature = 0.2\n')
        config = load_config(tmp_path / "project", cfg)
        assert "temperature" not in config["profiles"][0]
        assert "profiles[0].temperature" in capsys.readouterr().err

    def test_api_key_in_git_project_warns(self, tmp_path, capsys):
        project = tmp_path / "repo"
        (project / ".git").mkdir(parents=True)
        _write_toml(project / "hai.toml", PROFILE + 'api_key = "sk-oops"\n')
        load_config(project, tmp_path / "none.toml")
        assert "git-tracked" in capsys.readouterr().err


class TestValidation:
    @pytest.mark.parametrize(
        "content,match",
        [
            ('max_steps = "ten"\n', "expected int, got str"),
            ("max_steps = true\n", "expected int, got bool"),
            ("timeout = false\n", "got bool"),
            ("stream = 1\n", "expected bool, got int"),
            ('mode = "agent"\n', "'mode' must be one of auto, chat"),
            ("max_steps = 0\n", "'max_steps' must be at least 1"),
            ("timeout = 0\n", "'timeout' must be positive"),
            ("[prompts]\nx = 3\n", "prompts.x: expected string"),
            ("[pipe]\nstream = \"no\"\n", "'pipe.stream' expected bool"),
        ],
    )
    def test_bad_values(self, tmp_path, content, match):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, content)
        with pytest.raises(ConfigError, match=match):
            load_config(tmp_path / "project", cfg)

    def test_timeout_accepts_float(self, tmp_path):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, "timeout = 2.5\n")
        assert load_config(tmp_path / "project", cfg)["timeout"] == 2.5

    @pytest.mark.parametrize("missing", ["name", "provider", "model"])
    def test_profile_required_keys(self, tmp_path, missing):
        lines = [
            line
            for line in PROFILE.strip().splitlines()
            if not line.startswith(missing)
        ]
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, "\n".join(lines) + "\n")
        with pytest.raises(ConfigError, match=f"missing '{missing}'"):
            load_config(tmp_path / "project", cfg)

    def test_unknown_provider(self, tmp_path):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, PROFILE.replace('"openai"', '"cohere"'))
        with pytest.raises(ConfigError, match="provider must be one of"):
            load_config(tmp_path / "project", cfg)

    def test_profile_settings_checked(self, tmp_path):
        cfg = tmp_path / "c.toml"
        _write_toml(cfg, PROFILE + 'mode = "yolo"\n')
        with pytest.raises(ConfigError, match=r"profiles\[0\]: 'mode'"):
            load_config(tmp_path / "project", cfg)


# ---------------------------------------------------------------------------
# Profiles, keys, prompts
# ---------------------------------------------------------------------------


class TestResolveProfile:
    PROFILES = {
        "profiles": [
            {"name": "a", "provider": "openai", "model": "gpt-4o"},
            {"name": "b", "provider": "anthropic", "model": "c", "default": True},
        ]
    }

    def test_by_name(self):
        assert resolve_profile(self.PROFILES, "a")["name"] == "a"

    def test_default_flag(self):
        assert resolve_profile(self.PROFILES)["name"] == "b"

    def test_first_when_no_default(self):
        config = {"profiles": [dict(p, default=False) for p in self.PROFILES["profiles"]]}
        assert resolve_profile(config)["name"] == "a"

    def test_not_found(self):
        with pytest.raises(ConfigError, match="profile not found: zzz"):
            resolve_profile(self.PROFILES, "zzz")

    def test_no_profiles(self):
        with pytest.raises(ConfigError, match="no profiles configured"):
            resolve_profile({})


class TestApiKey:
    def test_provider_env_var_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        profile = {"provider": "openai", "api_key": "from-file"}
        assert get_api_key(profile) == "from-env"

    def test_literal_key(self):
        assert get_api_key({"provider": "anthropic", "api_key": "sk-ant"}) == "sk-ant"

    def test_env_reference(self, monkeypatch):
        monkeypatch.setenv("HAI_TEST_KEY", "expanded")
        profile = {"provider": "anthropic", "api_key": "$HAI_TEST_KEY"}
        assert get_api_key(profile) == "expanded"

    def test_unset_env_reference_is_missing(self):
        assert get_api_key({"provider": "anthropic", "api_key": "$HAI_TEST_KEY"}) is None

    def test_gemini_falls_back_to_google_key(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g")
        assert get_api_key({"provider": "gemini"}) == "g"
        monkeypatch.setenv("GEMINI_API_KEY", "gem")
        assert get_api_key({"provider": "gemini"}) == "gem"

    def test_empty_key_is_missing(self):
        assert get_api_key({"provider": "openai", "api_key": ""}) is None


class TestPromptTemplate:
    def test_found(self):
        config = {"prompts": {"explain": "Explain: {{input}}"}}
        assert get_prompt_template(config, "explain") == "Explain: {{input}}"

    def test_missing(self):
        with pytest.raises(ConfigError, match="prompt template not found: nope"):
            get_prompt_template({"prompts": {}}, "nope")


# ---------------------------------------------------------------------------
# apply_config_to_args
# ---------------------------------------------------------------------------


class TestApplyConfigToArgs:
    def test_defaults_on_terminal(self):
        args = _make_args()
        apply_config_to_args(args, {}, {}, is_tty=True)
        assert args.think is False
        assert args.mode == "auto"
        assert args.max_steps == 10
        assert args.timeout == 30
        assert args.stream is True
        assert args.color is True

    def test_defaults_when_piped(self):
        args = _make_args()
        apply_config_to_args(args, {}, {}, is_tty=False)
        assert args.stream is False
        assert args.color is False

    def test_pipe_table_used_when_piped(self):
        args = _make_args()
        config = {"stream": False, "pipe": {"stream": True, "color": True}}
        apply_config_to_args(args, config, {}, is_tty=False)
        assert args.stream is True
        assert args.color is True

    def test_top_level_used_on_terminal(self):
        args = _make_args()
        config = {"stream": False, "color": False, "pipe": {"stream": True}}
        apply_config_to_args(args, config, {}, is_tty=True)
        assert args.stream is False
        assert args.color is False

    def test_profile_beats_config(self):
        args = _make_args()
        config = {"max_steps": 5, "think": False}
        profile = {"max_steps": 3, "think": True, "stream": False}
        apply_config_to_args(args, config, profile, is_tty=True)
        assert args.max_steps == 3
        assert args.think is True
        assert args.stream is False

    def test_cli_beats_profile(self):
        args = _make_args(max_steps=2, stream=True, color=False)
        profile = {"max_steps": 3, "stream": False}
        apply_config_to_args(args, {}, profile, is_tty=True)
        assert args.max_steps == 2
        assert args.stream is True
        assert args.color is False

    def test_chat_flag_forces_chat_mode(self):
        args = _make_args(chat=True)
        apply_config_to_args(args, {"mode": "auto"}, {}, is_tty=True)
        assert args.mode == "chat"

    def test_config_mode_chat(self):
        args = _make_args()
        apply_config_to_args(args, {"mode": "chat"}, {}, is_tty=True)
        assert args.mode == "chat"
