"""
Signing callback handler -- the only entry point for untrusted input.

``handle_signing_callback`` validates an inbound provider message, presents
its token to the ContinuationManager and maps the outcome onto an
HTTP-style response.  It is transport-agnostic: a web framework adapter
only has to decode the body and return ``status_code``.

    200  resumed / already resumed (duplicate delivery is success)
    400  malformed message
    404  token does not match any wait (or does not match bundle_id)
    410  the wait expired before the callback arrived
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from bundle_kernel.domain.types import ResumeResult, SigningOutcome
from bundle_kernel.exceptions import ValidationError
from bundle_kernel.logging_config import LogContext, get_logger
from bundle_kernel.services.continuation import ContinuationManager

logger = get_logger("batch.callbacks")

_STATUS_CODES = {
    ResumeResult.RESUMED: 200,
    ResumeResult.ALREADY_RESUMED: 200,
    ResumeResult.NOT_FOUND: 404,
    ResumeResult.EXPIRED: 410,
}


@dataclass(frozen=True)
class CallbackResponse:
    status_code: int
    result: ResumeResult | None = None
    bundle_id: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class SigningCallback:
    """A validated provider callback."""

    token: str
    outcome: SigningOutcome
    bundle_id: str | None = None
    artifact_ref: str | None = None
    log_ref: str | None = None
    error_detail: str | None = None


def _optional_text(message: Mapping[str, Any], key: str) -> str | None:
    value = message.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", field=key)
    return value.strip() or None


def parse_signing_callback(message: Mapping[str, Any]) -> SigningCallback:
    """
    Validate a raw callback message.

    Raises:
        ValidationError: missing token, unknown outcome, or a SUCCESS
            without artifact_ref.
    """
    if not isinstance(message, Mapping):
        raise ValidationError("callback body must be an object")

    token = _optional_text(message, "token")
    if token is None:
        raise ValidationError("token is required", field="token")

    raw_outcome = message.get("outcome")
    try:
        outcome = SigningOutcome(str(raw_outcome).upper())
    except ValueError:
        raise ValidationError(
            f"outcome must be SUCCESS or FAILURE, got {raw_outcome!r}", field="outcome",
        ) from None

    artifact_ref = _optional_text(message, "artifact_ref")
    if outcome == SigningOutcome.SUCCESS and artifact_ref is None:
        raise ValidationError("artifact_ref is required for a SUCCESS outcome", field="artifact_ref")

    return SigningCallback(
        token=token,
        outcome=outcome,
        bundle_id=_optional_text(message, "bundle_id"),
        artifact_ref=artifact_ref,
        log_ref=_optional_text(message, "log_ref"),
        error_detail=_optional_text(message, "error_detail"),
    )


def handle_signing_callback(
    manager: ContinuationManager,
    message: Mapping[str, Any],
) -> CallbackResponse:
    """Validate, resume, and map the outcome to a response."""
    try:
        callback = parse_signing_callback(message)
    except ValidationError as exc:
        logger.warning("signing_callback_invalid", extra={"field": exc.field, "error": str(exc)})
        return CallbackResponse(status_code=400, message=str(exc))

    with LogContext.bind(correlation_id=callback.bundle_id, stage="signing_callback"):
        response = manager.resume(
            callback.token,
            callback.outcome,
            bundle_id=callback.bundle_id,
            artifact_ref=callback.artifact_ref,
            log_ref=callback.log_ref,
            error_detail=callback.error_detail,
        )

    status_code = _STATUS_CODES[response.result]
    logger.info(
        "signing_callback_handled",
        extra={
            "result": response.result.value,
            "status_code": status_code,
            "resolved_bundle_id": response.bundle_id,
        },
    )
    return CallbackResponse(
        status_code=status_code,
        result=response.result,
        bundle_id=response.bundle_id,
    )
