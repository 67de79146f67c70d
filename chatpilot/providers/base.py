"""Collaborator interfaces: the language-model oracle and the action executor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping


class ChatPilotError(Exception):
    """Base class for chatpilot errors."""


class OracleError(ChatPilotError):
    """An oracle call failed or produced an unusable response."""


@dataclass
class ExecutionResult:
    """Envelope returned by an action executor."""

    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def coerce(cls, value: "ExecutionResult | Mapping[str, Any]") -> "ExecutionResult":
        """Accept either an ExecutionResult or a {success, result?, error?} mapping."""
        if isinstance(value, ExecutionResult):
            return value
        return cls(
            success=bool(value.get("success", False)),
            result=value.get("result"),
            error=value.get("error"),
        )


class Oracle(ABC):
    """
    Abstract text-completion oracle.

    Maps a natural-language prompt to a text response. The response is
    expected to be JSON per the calling prompt's contract, but callers
    must tolerate anything.
    """

    @abstractmethod
    async def analyze(self, prompt: str) -> str:
        """
        Complete a prompt.

        Args:
            prompt: Full prompt (system instructions and payload).

        Returns:
            Raw response text.

        Raises:
            Exception: Any failure; callers treat it as resolve-or-reject.
        """
        pass


class ActionExecutor(ABC):
    """Abstract executor performing a named external action."""

    @abstractmethod
    async def execute(self, tool: str, parameters: dict[str, Any]) -> ExecutionResult:
        """
        Perform an action.

        Args:
            tool: Tool name (e.g. "timeoutUser").
            parameters: Bound parameters.

        Returns:
            ExecutionResult envelope; side effects are not inspected further.
        """
        pass


class CallableOracle(Oracle):
    """Oracle backed by any ``async (prompt) -> str`` function."""

    def __init__(self, fn: Callable[[str], Awaitable[str]]):
        self._fn = fn

    async def analyze(self, prompt: str) -> str:
        return await self._fn(prompt)


class CallableExecutor(ActionExecutor):
    """Executor backed by any ``async (tool, parameters) -> result`` function."""

    def __init__(
        self,
        fn: Callable[[str, dict[str, Any]], Awaitable[ExecutionResult | Mapping[str, Any]]],
    ):
        self._fn = fn

    async def execute(self, tool: str, parameters: dict[str, Any]) -> ExecutionResult:
        return ExecutionResult.coerce(await self._fn(tool, parameters))
