"""tether: a tool-calling agent with permission-gated parallel tool execution."""

from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["Session", "Result", "AgentError", "ConfigError"]
