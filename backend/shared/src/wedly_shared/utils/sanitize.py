"""Redaction of sensitive substrings before text reaches a log line or a caller.

Applied to every user-facing error message and every rendered log record.
Patterns run in order; provider keys are redacted before the generic
long-token pattern so they keep their more specific placeholder.
"""

import re
from typing import Any

SANITIZE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bwhsec_[A-Za-z0-9_]+"), "[webhook_secret]"),
    (re.compile(r"\b(?:sk|pk|rk)_[A-Za-z0-9_]+"), "[stripe_key]"),
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), "[email]"),
    # 13-19 digits, optionally grouped with spaces or dashes
    (re.compile(r"(?<!\d)\d(?:[ -]?\d){12,18}(?!\d)"), "[card]"),
    (re.compile(r"[A-Za-z0-9+/]{40,}={0,2}"), "[token]"),
)


def sanitize_message(message: str | None) -> str:
    """Redact emails, card numbers, provider keys and long opaque tokens.

    Args:
        message: Text that may contain sensitive values

    Returns:
        The text with every sensitive match replaced by a placeholder
    """
    if not message:
        return ""
    sanitized = message
    for pattern, replacement in SANITIZE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def sanitize_value(value: Any) -> Any:
    """Recursively sanitize strings nested inside dicts, lists and tuples."""
    if isinstance(value, str):
        return sanitize_message(value)
    if isinstance(value, dict):
        return {key: sanitize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_value(item) for item in value)
    return value
