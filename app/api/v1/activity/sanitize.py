"""Make before/after/meta payloads safe to store: JSON-friendly, secrets redacted, size bounded."""

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel

MAX_LOG_STRING_LENGTH = 1200
MAX_RECURSION_DEPTH = 4
MAX_ARRAY_ITEMS = 50
MAX_OBJECT_KEYS = 100

REDACTED = "[REDACTED]"
TRUNCATED = "[TRUNCATED]"

SENSITIVE_KEY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"password",
        r"token",
        r"secret",
        r"authorization",
        r"cookie",
        r"set-cookie",
        r"api[-_]?key",
        r"private[-_]?key",
        r"recaptcha",
        r"turnstile",
        r"captcha",
    )
]


def truncate(value: Optional[str], max_length: int = 255) -> Optional[str]:
    """Trim and cap a scalar column value; blank becomes None."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if len(trimmed) <= max_length:
        return trimmed
    return f"{trimmed[: max_length - 1]}…"


def should_redact_key(key: str) -> bool:
    return any(p.search(key) for p in SENSITIVE_KEY_PATTERNS)


def _normalize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (tuple, set, frozenset)):
        return list(value)
    return value


def _sanitize(value: Any, depth: int, key_hint: Optional[str] = None) -> Any:
    value = _normalize(value)
    if value is None:
        return None

    if key_hint and should_redact_key(key_hint):
        return REDACTED

    if isinstance(value, str):
        if len(value) > MAX_LOG_STRING_LENGTH:
            return f"{value[: MAX_LOG_STRING_LENGTH - 1]}…"
        return value

    if isinstance(value, (bool, int, float)):
        return value

    if depth >= MAX_RECURSION_DEPTH:
        return TRUNCATED

    if isinstance(value, list):
        out = [_sanitize(item, depth + 1) for item in value[:MAX_ARRAY_ITEMS]]
        if len(value) > MAX_ARRAY_ITEMS:
            out.append(f"[+{len(value) - MAX_ARRAY_ITEMS} more items]")
        return out

    if isinstance(value, dict):
        entries = list(value.items())
        out = {}
        for key, item in entries[:MAX_OBJECT_KEYS]:
            out[str(key)] = _sanitize(item, depth + 1, str(key))
        if len(entries) > MAX_OBJECT_KEYS:
            out["__truncated_keys"] = f"+{len(entries) - MAX_OBJECT_KEYS}"
        return out

    return str(value)


def sanitize_for_log(value: Any) -> Any:
    return _sanitize(value, 0)
