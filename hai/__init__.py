"""hai: a terminal assistant that can run shell commands with your consent."""

from .errors import AgentError, ConfigError, ModelError
from .session import RunConfig, RunResult, Session

__all__ = [
    "AgentError",
    "ConfigError",
    "ModelError",
    "RunConfig",
    "RunResult",
    "Session",
]
