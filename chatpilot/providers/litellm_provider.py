"""LiteLLM oracle implementation for multi-provider support."""

import re
from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from chatpilot.config.schema import OracleConfig
from chatpilot.providers.base import Oracle, OracleError

_THINK_PATTERN = re.compile(r"<think>[\s\S]*?</think>")


class LiteLLMOracle(Oracle):
    """
    Oracle using LiteLLM for multi-provider support.

    Supports OpenRouter, Anthropic, OpenAI, Gemini, Ollama and the other
    providers LiteLLM routes to. Each prompt is sent as a single user
    message; failures are raised as OracleError so callers can degrade.
    """

    def __init__(
        self,
        model: str = "anthropic/claude-sonnet-4-5",
        api_key: str | None = None,
        api_base: str | None = None,
        extra_headers: dict[str, str] | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.extra_headers = extra_headers or {}
        self.temperature = temperature
        # Clamp max_tokens to at least 1; LiteLLM rejects zero or negative values.
        self.max_tokens = max(1, max_tokens)

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers
        litellm.drop_params = True

    @classmethod
    def from_config(cls, config: OracleConfig) -> "LiteLLMOracle":
        """Build an oracle from the ``oracle`` config section."""
        return cls(
            model=config.model,
            api_key=config.api_key or None,
            api_base=config.api_base,
            extra_headers=config.extra_headers,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    @staticmethod
    def _strip_think(text: str | None) -> str | None:
        """Remove <think>...</think> blocks some reasoning models emit."""
        if not text:
            return None
        return _THINK_PATTERN.sub("", text).strip() or None

    async def analyze(self, prompt: str) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        # Pass api_key directly - more reliable than env vars alone
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.warning("Oracle call failed ({}): {}", self.model, e)
            raise OracleError(f"Error calling LLM: {e}") from e

        content = self._strip_think(response.choices[0].message.content)
        if content is None:
            raise OracleError("Oracle returned an empty response")
        return content
