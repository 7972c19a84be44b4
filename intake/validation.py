"""Explicit validation functions for submissions and extraction results.

Each check returns plain data (a field -> messages map or a list of
messages); ``ensure_*`` helpers turn non-empty results into exceptions.
"""
from __future__ import annotations

import logging
import re
from typing import Iterable

from pydantic import EmailStr, TypeAdapter, ValidationError

from config.content_rules import (
    DISPOSABLE_EMAIL_DOMAINS,
    INFORMATION_CATEGORIES,
    MIN_DISTINCT_CHARACTERS,
    MIN_INFORMATION_CATEGORIES,
    MIN_WORD_COUNT,
    SPAM_PATTERNS,
)

from .errors import BusinessRuleViolation, MissingRequiredFields, ValidationFailed
from .pipelines.normalization import count_words

logger = logging.getLogger(__name__)

EMAIL_MAX_LENGTH = 255
DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 2000
ADDRESS_MIN_LENGTH = 5
AGE_RANGE = (0, 150)

LOW_QUALITY_MESSAGE = "Please provide a more detailed and meaningful description."
SPAM_MESSAGE = "The description appears to contain spam or inappropriate content."
LOW_INFORMATION_MESSAGE = (
    "Please provide more detailed information about the actor (name, physical attributes, etc.)."
)
DISPOSABLE_MESSAGE = "Disposable email addresses are not allowed."

_EMAIL_ADAPTER = TypeAdapter(EmailStr)
_SPAM_REGEXES = [re.compile(p, re.IGNORECASE) for p in SPAM_PATTERNS]


def validate_submission(email: str, description: str) -> dict[str, list[str]]:
    """Structural checks on already-normalized input."""
    errors: dict[str, list[str]] = {}

    if not email:
        errors.setdefault("email", []).append("Email address is required.")
    elif len(email) > EMAIL_MAX_LENGTH:
        errors.setdefault("email", []).append(
            f"Email address cannot exceed {EMAIL_MAX_LENGTH} characters."
        )
    else:
        try:
            _EMAIL_ADAPTER.validate_python(email)
        except ValidationError:
            errors.setdefault("email", []).append("Please provide a valid email address.")

    if not description:
        errors.setdefault("description", []).append("Actor description is required.")
    elif len(description) < DESCRIPTION_MIN_LENGTH:
        errors.setdefault("description", []).append(
            f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters long."
        )
    elif len(description) > DESCRIPTION_MAX_LENGTH:
        errors.setdefault("description", []).append(
            f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters."
        )

    return errors


def contains_spam(description: str) -> bool:
    return any(regex.search(description) for regex in _SPAM_REGEXES)


def information_categories(description: str) -> set[str]:
    """Names of the information categories a description touches."""
    lowered = description.lower()
    return {
        category
        for category, indicators in INFORMATION_CATEGORIES.items()
        if any(indicator in lowered for indicator in indicators)
    }


def check_description_quality(description: str) -> list[str]:
    """Heuristic pre-filter for low-information or spam-like descriptions.

    Returns the list of failure messages; empty means the description may be
    sent to extraction.
    """
    messages: list[str] = []

    distinct_chars = set(description.lower())
    if count_words(description) < MIN_WORD_COUNT or len(distinct_chars) < MIN_DISTINCT_CHARACTERS:
        messages.append(LOW_QUALITY_MESSAGE)

    if contains_spam(description):
        messages.append(SPAM_MESSAGE)

    if len(information_categories(description)) < MIN_INFORMATION_CATEGORIES:
        messages.append(LOW_INFORMATION_MESSAGE)

    return messages


def email_domain(email: str) -> str | None:
    if "@" not in email:
        return None
    return email.rsplit("@", 1)[1].lower()


def check_email_domain(email: str, extra_domains: Iterable[str] = ()) -> list[str]:
    """Reject mailboxes from the disposable-domain deny-list."""
    domain = email_domain(email)
    if domain is None:
        return []
    denied = DISPOSABLE_EMAIL_DOMAINS | {d.lower() for d in extra_domains}
    return [DISPOSABLE_MESSAGE] if domain in denied else []


def ensure_valid_submission(email: str, description: str) -> None:
    errors = validate_submission(email, description)
    if errors:
        raise ValidationFailed(errors)


def ensure_submission_allowed(
    email: str,
    description: str,
    extra_domains: Iterable[str] = (),
) -> None:
    """Run the quality and domain gates, collecting every message first."""
    errors: dict[str, list[str]] = {}

    quality = check_description_quality(description)
    if quality:
        errors["description"] = quality

    domain = check_email_domain(email, extra_domains)
    if domain:
        errors["email"] = domain

    if not errors:
        return

    reason = "quality_gate" if "description" in errors else "disposable_email"
    logger.info(f"Submission rejected by {reason}", extra={"reason": reason})
    raise BusinessRuleViolation(
        "Actor submission rejected",
        reason=reason,
        errors=errors,
        email=email,
    )


def invalid_extraction_fields(
    first_name: str | None,
    last_name: str | None,
    address: str | None,
    age: int | None,
) -> list[str]:
    """Field names of an extraction result that cannot be stored on an actor."""
    invalid: list[str] = []
    if not (first_name or "").strip():
        invalid.append("first_name")
    if not (last_name or "").strip():
        invalid.append("last_name")
    if len((address or "").strip()) < ADDRESS_MIN_LENGTH:
        invalid.append("address")
    if age is not None and not (AGE_RANGE[0] <= age <= AGE_RANGE[1]):
        invalid.append("age")
    return invalid


def ensure_extraction_complete(result, email: str | None = None) -> None:
    invalid = invalid_extraction_fields(result.first_name, result.last_name, result.address, result.age)
    if invalid:
        raise MissingRequiredFields(invalid, email=email)
