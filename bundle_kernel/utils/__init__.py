"""Utility modules for the bundle kernel."""

from bundle_kernel.utils.hashing import (
    canonicalize_json,
    hash_payload,
    new_continuation_token,
    token_digest,
)
from bundle_kernel.utils.idempotency import derive_bundle_id

__all__ = [
    "canonicalize_json",
    "hash_payload",
    "new_continuation_token",
    "token_digest",
    "derive_bundle_id",
]
