"""
Parsing of oracle responses.

Oracle output is loosely shaped text. Every response goes through one
fallible step: decode (tolerant, via json_repair) and validate against a
strict pydantic schema. Any failure raises OracleParseError, which callers
turn into their degrade or fallback path instead of propagating.
"""

from __future__ import annotations

import json
import re
from typing import Any, TypeVar

import json_repair
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from chatpilot.providers.base import OracleError

_THINK_PATTERN = re.compile(r"<think>[\s\S]*?</think>")
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

ModelT = TypeVar("ModelT", bound=BaseModel)

_PARAMETERS_ADAPTER = TypeAdapter(dict[str, Any])


class OracleParseError(OracleError):
    """The oracle answered, but not with the expected JSON shape."""


class Base(BaseModel):
    """Base schema accepting camelCase (as prompted) and snake_case keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", allow_inf_nan=False
    )


class ToxicityFinding(Base):
    message_index: int
    toxicity_score: float
    reason: str = ""
    action: str = ""
    username: str | None = None


class SpamFinding(Base):
    message_index: int
    spam_score: float
    reason: str = ""
    action: str = ""
    username: str | None = None


class EngagementFinding(Base):
    message_index: int
    engagement_score: float
    reason: str = ""
    suggested_response: str = ""
    username: str | None = None


class SentimentReading(Base):
    overall_sentiment: float
    reasoning: str = ""
    key_indicators: list[str] = Field(default_factory=list)

    @field_validator("overall_sentiment")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return max(-1.0, min(1.0, v))


class ActivityReading(Base):
    activity_level: float
    description: str = ""
    recommendations: list[str] = Field(default_factory=list)

    @field_validator("activity_level")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return max(0.0, min(10.0, v))


class DecisionProposal(Base):
    """One entry of the decision prompt's JSON array."""

    action: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    reason: str = Field(min_length=1)
    confidence: float | None = None
    target_pattern: str | None = None


def _strip_wrappers(text: str) -> str:
    """Remove <think> blocks and markdown code fences."""
    text = _THINK_PATTERN.sub("", text).strip()
    fenced = _FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group(1).strip()
    return text


def _extract_json_span(text: str) -> str:
    """Slice from the first opening bracket to the last matching closer."""
    starts = [i for i in (text.find("["), text.find("{")) if i >= 0]
    if not starts:
        return text
    start = min(starts)
    closer = "]" if text[start] == "[" else "}"
    end = text.rfind(closer) + 1
    return text[start:end] if end > start else text[start:]


def decode_json(text: str | None) -> Any:
    """
    Decode a JSON value from oracle output.

    Tries strict JSON first, then json_repair on the bracketed span.

    Raises:
        OracleParseError: If nothing JSON-shaped can be recovered.
    """
    if not text or not text.strip():
        raise OracleParseError("Empty oracle response")

    cleaned = _strip_wrappers(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    span = _extract_json_span(cleaned)
    if not span.lstrip().startswith(("[", "{")):
        raise OracleParseError("No JSON found in oracle response")

    try:
        value = json_repair.loads(span)
    except Exception as e:
        raise OracleParseError(f"Unrepairable JSON: {e}") from e

    if value in ("", None):
        raise OracleParseError("No JSON found in oracle response")
    return value


def parse_list(text: str | None, model: type[ModelT]) -> list[ModelT]:
    """
    Parse a JSON array of ``model`` items.

    The container must be an array; individual items that fail validation
    are skipped.

    Raises:
        OracleParseError: If the response is not a JSON array.
    """
    data = decode_json(text)
    if not isinstance(data, list):
        raise OracleParseError(f"Expected a JSON array, got {type(data).__name__}")

    items: list[ModelT] = []
    for raw in data:
        try:
            items.append(model.model_validate(raw))
        except ValidationError as e:
            logger.debug("Skipping invalid {} item: {}", model.__name__, e.errors()[:1])
    return items


def parse_object(text: str | None, model: type[ModelT]) -> ModelT:
    """
    Parse a single JSON object into ``model``.

    Raises:
        OracleParseError: If decoding or validation fails.
    """
    data = decode_json(text)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise OracleParseError(f"{model.__name__} schema mismatch: {e.errors()[:1]}") from e


def parse_parameters(text: str | None) -> dict[str, Any]:
    """
    Parse a flat parameter object ({"name": value}).

    Raises:
        OracleParseError: If the response is not a JSON object.
    """
    data = decode_json(text)
    try:
        return _PARAMETERS_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise OracleParseError("Parameter response is not a JSON object") from e
