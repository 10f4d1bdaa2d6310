"""Exception types shared across hai."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing profile, bad API key, etc.)."""


class ModelError(AgentError):
    """Raised when the model provider fails mid-run. Fatal to the run."""
