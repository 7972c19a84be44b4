"""Structured extraction result parsed from a chat-completion response.

Implements gender canonicalization, age coercion and the confidence score.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from config.content_rules import GENDER_SYNONYMS

logger = logging.getLogger(__name__)

REQUIRED_FIELD_WEIGHT = 2.0
OPTIONAL_FIELD_WEIGHT = 0.25
MAX_CONFIDENCE_SCORE = 7.0

_GENDER_LOOKUP = {
    synonym: canonical
    for canonical, synonyms in GENDER_SYNONYMS.items()
    for synonym in synonyms
}


class MalformedResponse(ValueError):
    """Raised when a completion does not carry a JSON object."""
    pass


def normalize_gender(value: Any) -> str | None:
    """Map free-text gender to male|female|other|prefer_not_to_say or None."""
    if not isinstance(value, str) or not value.strip():
        return None
    return _GENDER_LOOKUP.get(value.strip().lower())


def coerce_age(value: Any) -> int | None:
    """Integers and numeric strings become ``int``; anything else is dropped."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    # Models occasionally spell out a JSON null
    if not text or text.lower() in {"null", "none", "n/a"}:
        return None
    return text


@dataclass
class ExtractionResult:
    """Fields extracted from one actor description."""
    first_name: str = ""
    last_name: str = ""
    address: str = ""
    height: str | None = None
    weight: str | None = None
    gender: str | None = None
    age: int | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    tokens_used: int | None = None
    from_cache: bool = False

    @classmethod
    def from_api_response(cls, response: dict[str, Any], *, from_cache: bool = False) -> ExtractionResult:
        """Parse a chat-completion response dict.

        Raises:
            MalformedResponse: If the message content is not a JSON object
        """
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponse(f"Response has no message content: {e}") from e

        try:
            data = json.loads(content or "")
        except (TypeError, json.JSONDecodeError) as e:
            raise MalformedResponse(f"Message content is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise MalformedResponse("Message content is not a JSON object")

        usage = response.get("usage") or {}
        return cls(
            first_name=_text(data.get("first_name")) or "",
            last_name=_text(data.get("last_name")) or "",
            address=_text(data.get("address")) or "",
            height=_text(data.get("height")),
            weight=_text(data.get("weight")),
            gender=normalize_gender(data.get("gender")),
            age=coerce_age(data.get("age")),
            raw_response=response,
            model=response.get("model"),
            tokens_used=usage.get("total_tokens"),
            from_cache=from_cache,
        )

    @property
    def missing_required_fields(self) -> list[str]:
        return [
            name
            for name in ("first_name", "last_name", "address")
            if not getattr(self, name)
        ]

    @property
    def has_required_fields(self) -> bool:
        return not self.missing_required_fields

    @property
    def confidence_score(self) -> float:
        """Weighted share of populated fields, in [0, 1]."""
        score = 0.0
        for value in (self.first_name, self.last_name, self.address):
            if value:
                score += REQUIRED_FIELD_WEIGHT
        for value in (self.height, self.weight, self.gender, self.age):
            # age 0 is a real value, unlike an empty string
            if value is not None and value != "":
                score += OPTIONAL_FIELD_WEIGHT
        return round(score / MAX_CONFIDENCE_SCORE, 2)

    def actor_fields(self) -> dict[str, Any]:
        """Columns to merge into an Actor row."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "address": self.address,
            "height": self.height,
            "weight": self.weight,
            "gender": self.gender,
            "age": self.age,
        }

    def to_storage(self) -> dict[str, Any]:
        """Payload persisted alongside the actor and its submission record."""
        return {
            **self.actor_fields(),
            "confidence_score": self.confidence_score,
            "tokens_used": self.tokens_used,
            "model": self.model,
            "from_cache": self.from_cache,
            "extracted_at": datetime.now(timezone.utc).isoformat(),
        }
