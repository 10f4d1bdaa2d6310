"""Configuration file loading and merging for hai.

Reads TOML config from ~/.config/hai/config.toml (global, or the file named
by --config) and ./hai.toml (project). Precedence for run settings:
CLI > profile > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .llm import PROVIDERS

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "hai.toml"

# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "stream": bool,
    "think": bool,
    "mode": str,
    "max_steps": int,
    "timeout": (int, float),
    "color": bool,
    "pipe": dict,
    "prompts": dict,
    "profiles": list,
}

PROFILE_KEYS: dict[str, type | tuple[type, ...]] = {
    "name": str,
    "default": bool,
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "think": bool,
    "stream": bool,
    "mode": str,
    "max_steps": int,
    "timeout": (int, float),
}

PIPE_KEYS: dict[str, type] = {
    "stream": bool,
    "color": bool,
}

MODES = ("auto", "chat")

# Settings a profile may override, with their hardcoded defaults
_SETTING_DEFAULTS: dict[str, Any] = {
    "think": False,
    "mode": "auto",
    "max_steps": 10,
    "timeout": 30,
}

# Provider -> environment variables holding its API key, in priority order
API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "openai-compatible": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "hai"
    return Path.home() / ".config" / "hai"


def global_config_path() -> Path:
    return global_config_dir() / "config.toml"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_types(
    table: dict, schema: dict, source: str, prefix: str = ""
) -> dict:
    """Type-check table against schema; warn about and drop unknown keys."""
    known = {}
    for key, value in table.items():
        label = f"{prefix}{key}"
        if key not in schema:
            print(f"warning: {source}: unknown config key {label!r}", file=sys.stderr)
            continue

        expected = schema[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {label!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {label!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        known[key] = value
    return known


def _check_settings(table: dict, source: str) -> None:
    if "mode" in table and table["mode"] not in MODES:
        raise ConfigError(
            f"{source}: 'mode' must be one of {', '.join(MODES)}, got {table['mode']!r}"
        )
    if "max_steps" in table and table["max_steps"] < 1:
        raise ConfigError(f"{source}: 'max_steps' must be at least 1")
    if "timeout" in table and table["timeout"] <= 0:
        raise ConfigError(f"{source}: 'timeout' must be positive")


def _validate_config(config: dict, source: str) -> dict:
    """Validate a parsed config dict and return only the known keys.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    known = _check_types(config, CONFIG_KEYS, source)
    _check_settings(known, source)

    if "pipe" in known:
        known["pipe"] = _check_types(known["pipe"], PIPE_KEYS, source, "pipe.")

    if "prompts" in known:
        for name, template in known["prompts"].items():
            if not isinstance(template, str):
                raise ConfigError(
                    f"{source}: prompts.{name}: expected string, got {type(template).__name__}"
                )

    if "profiles" in known:
        profiles = []
        for i, profile in enumerate(known["profiles"]):
            prefix = f"profiles[{i}]."
            if not isinstance(profile, dict):
                raise ConfigError(f"{source}: profiles[{i}] must be a table")
            profile = _check_types(profile, PROFILE_KEYS, source, prefix)
            for required in ("name", "provider", "model"):
                if required not in profile:
                    raise ConfigError(f"{source}: profiles[{i}] is missing {required!r}")
            if profile["provider"] not in PROVIDERS:
                raise ConfigError(
                    f"{source}: profiles[{i}].provider must be one of "
                    f"{', '.join(PROVIDERS)}, got {profile['provider']!r}"
                )
            _check_settings(profile, f"{source}: profiles[{i}]")
            profiles.append(profile)
        known["profiles"] = profiles

    return known


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if an api_key is set in a project config inside a git repo."""
    if not any("api_key" in p for p in config.get("profiles", [])):
        return
    # Walk up from config file looking for .git
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    return _validate_config(config, label)


# --- Public API ---


def ensure_config(path: Path) -> bool:
    """Write the starter config to path if nothing is there. True if created."""
    if path.exists():
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_config(), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot create config file {path}: {e}") from e
    return True


def load_config(base_dir: Path, config_path: Path | None = None) -> dict:
    """Load and merge global (or explicit) + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    The returned dict also contains ``config_path``, the file used as the
    global config.
    """
    global_path = Path(config_path) if config_path else global_config_path()
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = {}
    if project_path != global_path.resolve():
        project_config = _load_single(project_path, str(project_path))
        if project_config:
            _check_api_key_in_git(project_config, project_path)

    # Merge: project overrides global (shallow)
    merged = {**global_config, **project_config}
    merged["config_path"] = global_path
    return merged


def resolve_profile(config: dict, name: str | None = None) -> dict:
    """Pick the named profile, else the one marked default, else the first."""
    profiles = config.get("profiles", [])
    if name:
        for profile in profiles:
            if profile["name"] == name:
                return profile
        raise ConfigError(f"profile not found: {name}")
    for profile in profiles:
        if profile.get("default") is True:
            return profile
    if not profiles:
        raise ConfigError("no profiles configured")
    return profiles[0]


def _expand_env(value: str | None) -> str | None:
    """Expand the $ENV_VAR form; anything else is returned as-is."""
    if value and value.startswith("$") and len(value) > 1:
        return os.environ.get(value[1:]) or None
    return value or None


def get_api_key(profile: dict) -> str | None:
    """Environment variable for the provider first, then the profile's api_key."""
    for var in API_KEY_ENV_VARS.get(profile.get("provider"), ()):
        value = os.environ.get(var)
        if value:
            return value
    return _expand_env(profile.get("api_key"))


def get_base_url(profile: dict) -> str | None:
    return _expand_env(profile.get("base_url"))


def get_prompt_template(config: dict, name: str) -> str:
    prompts = config.get("prompts", {})
    if name not in prompts:
        raise ConfigError(f"prompt template not found: {name}")
    return prompts[name]


def apply_config_to_args(
    args: argparse.Namespace, config: dict, profile: dict, *, is_tty: bool
) -> None:
    """Fill in every run setting the CLI left as _UNSET.

    think, mode, max_steps and timeout fall back profile > config > default.
    stream and color depend on whether stdout is a terminal: the top-level
    keys apply to terminals, the [pipe] table to pipes.
    """
    for key, default in _SETTING_DEFAULTS.items():
        if getattr(args, key, _UNSET) is not _UNSET:
            continue
        if key in profile:
            value = profile[key]
        else:
            value = config.get(key, default)
        setattr(args, key, value)

    if getattr(args, "chat", False):
        args.mode = "chat"

    pipe = config.get("pipe", {})
    if getattr(args, "stream", _UNSET) is _UNSET:
        if "stream" in profile:
            args.stream = profile["stream"]
        elif is_tty:
            args.stream = config.get("stream", True)
        else:
            args.stream = pipe.get("stream", False)

    if getattr(args, "color", _UNSET) is _UNSET:
        if is_tty:
            args.color = config.get("color", True)
        else:
            args.color = pipe.get("color", False)


def generate_config() -> str:
    """Return the starter config written on first run."""
    lines = [
        "# hai configuration file",
        "# Global config: ~/.config/hai/config.toml",
        "# A hai.toml in the current directory overrides these values.",
        "# CLI flags override both.",
        "",
        "# --- Behaviour ---",
        "# stream = true          # stream responses on a terminal",
        "# think = false          # extended reasoning where the model supports it",
        '# mode = "auto"          # "auto" (shell tool enabled) | "chat" (no tools)',
        "# max_steps = 10         # model calls per run",
        "# timeout = 30           # seconds per shell command",
        "# color = true",
        "",
        "# Settings used when stdout is piped",
        "[pipe]",
        "stream = false",
        "color = false",
        "",
        "# Templates for -p/--prompt; {{input}} is replaced by the message",
        "[prompts]",
        'translate = "Translate into English: {{input}}"',
        'explain = "Explain in plain words: {{input}}"',
        'code = "Write code that does the following: {{input}}"',
        "",
        "# Provider API keys are read from OPENAI_API_KEY, ANTHROPIC_API_KEY and",
        "# GEMINI_API_KEY/GOOGLE_API_KEY first. api_key also accepts $ENV_VAR.",
        "[[profiles]]",
        'name = "gpt4"',
        "default = true",
        'provider = "openai"',
        'model = "gpt-4o"',
        '# api_key = "$OPENAI_API_KEY"',
        "",
        "[[profiles]]",
        'name = "claude"',
        'provider = "anthropic"',
        'model = "claude-sonnet-4-20250514"',
        "# think = true",
        "",
        "[[profiles]]",
        'name = "local"',
        'provider = "openai-compatible"',
        'model = "llama3"',
        'api_key = "ollama"',
        'base_url = "http://localhost:11434/v1"',
        "",
    ]
    return "\n".join(lines)
