"""
Admission row validators.

Record-level only: required identity fields, sequence_no coercion and
bundle id derivation.  Cross-record checks (duplicate sequence numbers
within a bundle) are not done here; a duplicate is admitted
and fails the bundle during orchestrator initialization.

Architecture: bundle_ingestion/domain. ZERO I/O. Imports only from bundle_kernel
utils and this package's types.
"""

from __future__ import annotations

from typing import Any, Mapping

from bundle_kernel.utils.idempotency import derive_bundle_id

from bundle_ingestion.domain.types import AdmissionRow, FieldError

MAX_ID_LENGTH = 200


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return None


def validate_identifier(record: Mapping[str, Any], field: str) -> tuple[str | None, list[FieldError]]:
    """Required non-empty string (integers are accepted and stringified)."""
    raw = record.get(field)
    value = _text(raw)
    if value is None:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None, [FieldError("MISSING_FIELD", f"{field} is required", field)]
        return None, [FieldError("INVALID_TYPE", f"{field} must be a string, got {raw!r}", field)]
    if len(value) > MAX_ID_LENGTH:
        return None, [
            FieldError("VALUE_TOO_LONG", f"{field} exceeds {MAX_ID_LENGTH} characters", field)
        ]
    return value, []


def coerce_sequence_no(raw: Any) -> tuple[int | None, list[FieldError]]:
    """
    Coerce sequence_no to a non-negative int.

    Accepts ints and decimal-integer strings (CSV).  Booleans and floats
    with a fractional part are rejected.
    """
    field = "sequence_no"
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None, [FieldError("MISSING_FIELD", "sequence_no is required", field)]
    if isinstance(raw, bool):
        return None, [FieldError("INVALID_TYPE", "sequence_no must be an integer, got a boolean", field)]

    value: int | None = None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float) and raw.is_integer():
        value = int(raw)
    elif isinstance(raw, str):
        try:
            value = int(raw.strip())
        except ValueError:
            value = None

    if value is None:
        return None, [FieldError("INVALID_TYPE", f"sequence_no must be an integer, got {raw!r}", field)]
    if value < 0:
        return None, [FieldError("OUT_OF_RANGE", f"sequence_no must be >= 0, got {value}", field)]
    return value, []


def resolve_bundle_id(record: Mapping[str, Any]) -> tuple[str | None, list[FieldError]]:
    """Explicit bundle_id, or one derived from source_batch + dealer_id."""
    if _text(record.get("bundle_id")) is not None or (
        record.get("source_batch") is None and record.get("dealer_id") is None
    ):
        return validate_identifier(record, "bundle_id")

    source_batch, errors = validate_identifier(record, "source_batch")
    dealer_id, dealer_errors = validate_identifier(record, "dealer_id")
    errors.extend(dealer_errors)
    if errors:
        return None, errors
    try:
        return derive_bundle_id(source_batch, dealer_id), []
    except ValueError as exc:
        return None, [FieldError("INVALID_VALUE", str(exc), "dealer_id")]


def validate_admission_row(
    record: Mapping[str, Any],
    source_row: int,
) -> tuple[AdmissionRow | None, tuple[FieldError, ...]]:
    """Validate one raw row; returns the parsed row or every error found."""
    errors: list[FieldError] = []

    bundle_id, bundle_errors = resolve_bundle_id(record)
    errors.extend(bundle_errors)
    contract_id, contract_errors = validate_identifier(record, "contract_id")
    errors.extend(contract_errors)
    sequence_no, seq_errors = coerce_sequence_no(record.get("sequence_no"))
    errors.extend(seq_errors)

    if errors:
        return None, tuple(errors)
    return (
        AdmissionRow(
            source_row=source_row,
            bundle_id=bundle_id,
            contract_id=contract_id,
            sequence_no=sequence_no,
        ),
        (),
    )
