"""
Input validation and sanitization.

Every string reaches the storage engine through this module.

Two policies apply:
    - Free text (decision text/rationale, pattern description/example,
      context values) is sanitized: control bytes stripped, whitespace
      trimmed, over-long values truncated with a visible marker. Never refused.
    - Keys (pattern names, context keys) double as lookup identifiers and are
      validated: anything outside the allowlist is refused.
"""

import re
from typing import Any

from projmem.errors import ValidationError

MAX_TEXT_LENGTH = 10000
MAX_KEY_LENGTH = 100
MAX_TAGS = 50
MAX_TAG_LENGTH = 100
TRUNCATION_MARKER = "... [truncated]"

KEY_PATTERN = re.compile(r"[\w.-]+", re.ASCII)

# C0 controls except \t \n \r, DEL, and C1 controls
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")

# Absolute paths and URL userinfo that must not leak through error messages
_PATH_RE = re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.\-~ ]+){2,}[\\/]?")
_URL_CREDENTIALS_RE = re.compile(r"(\w+://)[^/\s:@]+(?::[^/\s@]*)?@")
_PASSWORD_RE = re.compile(r"(password\s*=\s*)\S+", re.IGNORECASE)


def sanitize_text(value: Any, max_length: int = MAX_TEXT_LENGTH) -> str:
    """
    Clean and bound a free-text value.

    Args:
        value: Anything; None becomes "", non-strings are str()-ed
        max_length: Maximum length of the result, marker included

    Returns:
        The cleaned string, truncated with TRUNCATION_MARKER if it was too long.
        The result is never longer than max_length, so sanitizing it again
        returns it unchanged.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)

    cleaned = _CONTROL_CHARS.sub("", value).strip()
    if len(cleaned) <= max_length:
        return cleaned

    # Limits too small to hold the marker are cut without one
    if max_length <= len(TRUNCATION_MARKER):
        return cleaned[:max_length].rstrip()
    return cleaned[: max_length - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER


def validate_key(key: Any) -> bool:
    """Return True if key is a non-empty string of <=100 chars matching ^[\\w.-]+$."""
    if not isinstance(key, str) or not key:
        return False
    if len(key) > MAX_KEY_LENGTH:
        return False
    return KEY_PATTERN.fullmatch(key) is not None


def require_key(key: Any, field_name: str = "key") -> str:
    """
    Return key unchanged if valid.

    Raises:
        ValidationError: Naming the field and the rule that failed
    """
    if validate_key(key):
        return key

    if not isinstance(key, str) or not key:
        reason = "must be a non-empty string"
    elif len(key) > MAX_KEY_LENGTH:
        reason = f"must be at most {MAX_KEY_LENGTH} characters (got {len(key)})"
    else:
        reason = "may only contain letters, digits, '_', '.' and '-'"
    raise ValidationError(field_name=field_name, reason=reason)


def normalize_tags(tags: Any) -> list[str]:
    """
    Sanitize a tag collection into a sorted, de-duplicated list.

    Empty tags are dropped; at most MAX_TAGS tags of MAX_TAG_LENGTH are kept.
    """
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]

    cleaned = {
        tag
        for tag in (sanitize_text(t, MAX_TAG_LENGTH) for t in tags)
        if tag
    }
    return sorted(cleaned)[:MAX_TAGS]


def redact(text: str) -> str:
    """Strip filesystem paths and credentials from engine error detail."""
    text = _URL_CREDENTIALS_RE.sub(r"\1***@", text)
    text = _PASSWORD_RE.sub(r"\1***", text)
    return _PATH_RE.sub("<path>", text)
