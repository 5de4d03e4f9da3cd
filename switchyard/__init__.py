"""switchyard: an autonomous task agent that routes across LLM providers."""

from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session"]
