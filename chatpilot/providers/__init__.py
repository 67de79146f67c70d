"""Oracle and action executor abstractions."""

from chatpilot.providers.base import (
    ActionExecutor,
    CallableExecutor,
    CallableOracle,
    ChatPilotError,
    ExecutionResult,
    Oracle,
    OracleError,
)
from chatpilot.providers.litellm_provider import LiteLLMOracle

__all__ = [
    "ActionExecutor",
    "CallableExecutor",
    "CallableOracle",
    "ChatPilotError",
    "ExecutionResult",
    "LiteLLMOracle",
    "Oracle",
    "OracleError",
]
