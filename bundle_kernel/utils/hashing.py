"""
Deterministic hashing and capability-token utilities.

Continuation tokens are random; only their SHA-256 digest is persisted, so
a read of the bundles table never yields a usable callback capability.
"""

import hashlib
import json
import secrets
from datetime import date, datetime
from enum import Enum
from typing import Any

TOKEN_BYTES = 32


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (tuple, frozenset, set)):
        return sorted(obj) if isinstance(obj, (frozenset, set)) else list(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: dict | list | Any) -> str:
    """
    Convert data to canonical JSON string.

    Keys are sorted and whitespace is removed, so equal payloads always
    produce equal strings.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """Hex-encoded SHA-256 of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def new_continuation_token(nbytes: int = TOKEN_BYTES) -> str:
    """Generate an unguessable, URL-safe continuation token."""
    return secrets.token_urlsafe(nbytes)


def token_digest(token: str) -> str:
    """Hex-encoded SHA-256 of a continuation token (64 characters)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
