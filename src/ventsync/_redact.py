"""Helpers for safe debug logging.

Store requests carry the Supabase key twice (``apikey`` and a bearer
``Authorization`` header) and the bridge logs request bodies at DEBUG.
This module scrubs credential-bearing keys, and JWT-looking strings
wherever they appear, before they reach a log line.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "api_key",
        "authorization",
        "password",
        "service_role",
        "access_token",
        "refresh_token",
    }
)

# Supabase anon/service keys are JWTs: three base64url segments, header first.
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None or isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, str):
        text = _JWT_RE.sub("<jwt>", value)
        if len(text) > max_string:
            return f"{text[:max_string]}…<truncated>"
        return text

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(k): (
                "<redacted>"
                if str(k).lower() in _SENSITIVE_VALUE_KEYS
                else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            )
            for k, v in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)
