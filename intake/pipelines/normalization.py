"""Text normalization for submitted emails and descriptions.

Handles whitespace, case, punctuation and the content fingerprint used as the
extraction cache key.
"""
from __future__ import annotations

import hashlib
import re
import unicodedata


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize common punctuation variations."""
    # Replace smart quotes
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")

    # Normalize dashes
    text = text.replace('–', '-').replace('—', '-')

    return text


def normalize_email(email: str | None) -> str:
    """Trim and lowercase an email address."""
    return (email or "").strip().lower()


def normalize_description(description: str | None) -> str:
    """Trim a description and fold it to composed Unicode.

    Inner whitespace is preserved; the stored text should read the way the
    user typed it.
    """
    return unicodedata.normalize('NFC', (description or "").strip())


def description_fingerprint(description: str) -> str:
    """Content hash of a description, stable across whitespace/quote noise."""
    canonical = normalize_whitespace(normalize_punctuation(normalize_description(description)))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def count_words(text: str) -> int:
    """Count alphabetic words (apostrophes and hyphens allowed inside)."""
    return len(re.findall(r"[A-Za-z]+(?:['-][A-Za-z]+)*", text))
