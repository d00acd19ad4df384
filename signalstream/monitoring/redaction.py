"""
Log redaction helpers.

MetaApi auth tokens, Telegram bot tokens and database passwords must never
reach log output or the streaming audit table. Keys that look sensitive are
masked outright; string values are scrubbed for credentials embedded in URLs
(``/bot<token>/``, ``user:password@host``) and ``auth-token`` headers, which is
where aiohttp and SQLAlchemy error messages carry them.
"""

from __future__ import annotations

import re
from typing import Any


SENSITIVE_KEY_FRAGMENTS = (
    "token",
    "auth-token",
    "auth_token",
    "bot_token",
    "secret",
    "password",
    "authorization",
    "api_key",
    "database_url",
)

REDACTED = "***REDACTED***"

_BOT_TOKEN_IN_URL = re.compile(r"/bot\d+:[A-Za-z0-9_-]+")
_URL_PASSWORD = re.compile(r"(://[^:/@\s]+):[^@\s]+@")
_AUTH_TOKEN_HEADER = re.compile(r"(auth-token['\"]?\s*[:=]\s*['\"]?)[^'\"\s,}]+", re.IGNORECASE)


def _is_sensitive_key(key: str) -> bool:
    k = str(key).lower()
    return any(frag in k for frag in SENSITIVE_KEY_FRAGMENTS)


def scrub_text(text: str) -> str:
    """Mask credentials embedded in free text (URLs, header dumps, exception messages)."""
    text = _BOT_TOKEN_IN_URL.sub(f"/bot{REDACTED}", text)
    text = _URL_PASSWORD.sub(rf"\1:{REDACTED}@", text)
    return _AUTH_TOKEN_HEADER.sub(rf"\1{REDACTED}", text)


def redact(obj: Any) -> Any:
    """
    Recursively redact dict keys that look sensitive and scrub string values.
    """
    if isinstance(obj, dict):
        return {k: (REDACTED if _is_sensitive_key(k) else redact(v)) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(v) for v in obj]
    if isinstance(obj, str):
        return scrub_text(obj)
    return obj


def structlog_redaction_processor(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """Structlog processor: redact sensitive fields from event_dict."""
    return redact(event_dict)
