"""
bundle_kernel.domain.types -- Pure frozen dataclasses and the lifecycle graph.

ZERO I/O.  Everything here is importable by services, adapters and tests
without touching the database.

Invariants enforced:
    - Bundle status only moves along BUNDLE_TRANSITIONS; FAILED is reachable
      from every non-terminal state.
    - Vehicle status only moves along VEHICLE_TRANSITIONS.
    - Assembly order is ascending sequence_no; a tie is a validation error
      (order_for_assembly).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from bundle_kernel.exceptions import DuplicateSequenceError


# =============================================================================
# Status enums
# =============================================================================


class BundleStatus(str, Enum):
    """Bundle-level lifecycle status."""

    NEW = "NEW"  # Header written by admission, not yet validated
    READY = "READY"  # Validated, vehicle_count fixed
    ASSEMBLING = "ASSEMBLING"  # All pages rendered
    SIGNING = "SIGNING"  # Parked on the external signing callback
    SIGNED = "SIGNED"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    PARTIAL_FAILED = "PARTIAL_FAILED"  # >=1 vehicle failed delivery
    FAILED = "FAILED"


class VehicleStatus(str, Enum):
    """Per-vehicle status within a bundle."""

    READY = "READY"
    RENDERED = "RENDERED"
    RENDER_FAILED = "RENDER_FAILED"
    DELIVERED = "DELIVERED"
    DELIVERY_FAILED = "DELIVERY_FAILED"


TERMINAL_BUNDLE_STATUSES: frozenset[BundleStatus] = frozenset({
    BundleStatus.DELIVERED,
    BundleStatus.PARTIAL_FAILED,
    BundleStatus.FAILED,
})

_NON_TERMINAL = frozenset(BundleStatus) - TERMINAL_BUNDLE_STATUSES

BUNDLE_TRANSITIONS: dict[BundleStatus, frozenset[BundleStatus]] = {
    BundleStatus.NEW: frozenset({BundleStatus.READY}),
    BundleStatus.READY: frozenset({BundleStatus.ASSEMBLING}),
    BundleStatus.ASSEMBLING: frozenset({BundleStatus.SIGNING}),
    BundleStatus.SIGNING: frozenset({BundleStatus.SIGNED}),
    BundleStatus.SIGNED: frozenset({BundleStatus.DELIVERING}),
    BundleStatus.DELIVERING: frozenset({
        BundleStatus.DELIVERED,
        BundleStatus.PARTIAL_FAILED,
    }),
    # Out-of-band delivery retry only.
    BundleStatus.PARTIAL_FAILED: frozenset({BundleStatus.DELIVERED}),
    BundleStatus.DELIVERED: frozenset(),
    BundleStatus.FAILED: frozenset(),
}
for _status in _NON_TERMINAL:
    BUNDLE_TRANSITIONS[_status] = BUNDLE_TRANSITIONS[_status] | {BundleStatus.FAILED}

VEHICLE_TRANSITIONS: dict[VehicleStatus, frozenset[VehicleStatus]] = {
    VehicleStatus.READY: frozenset({
        VehicleStatus.RENDERED,
        VehicleStatus.RENDER_FAILED,
    }),
    VehicleStatus.RENDERED: frozenset({
        VehicleStatus.DELIVERED,
        VehicleStatus.DELIVERY_FAILED,
    }),
    VehicleStatus.DELIVERY_FAILED: frozenset({VehicleStatus.DELIVERED}),
    VehicleStatus.RENDER_FAILED: frozenset(),
    VehicleStatus.DELIVERED: frozenset(),
}


def is_valid_bundle_transition(from_status: BundleStatus, to_status: BundleStatus) -> bool:
    return to_status in BUNDLE_TRANSITIONS[from_status]


def is_valid_vehicle_transition(from_status: VehicleStatus, to_status: VehicleStatus) -> bool:
    return to_status in VEHICLE_TRANSITIONS[from_status]


# =============================================================================
# Store primitive results
# =============================================================================


class CreateResult(str, Enum):
    """Outcome of a create-if-absent primitive."""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


class LockResult(str, Enum):
    """Outcome of the start-once lock."""

    ACQUIRED = "acquired"
    ALREADY_STARTED = "already_started"


class TransitionResult(str, Enum):
    """Outcome of a compare-and-set status update that did not conflict."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


class SigningOutcome(str, Enum):
    """Outcome reported by the signing provider's callback."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class ResumeResult(str, Enum):
    """Outcome of presenting a continuation token."""

    RESUMED = "resumed"
    ALREADY_RESUMED = "already_resumed"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class Bundle:
    """Immutable snapshot of a bundle row.

    ``resume_token`` and ``consumed_token`` hold SHA-256 digests; the raw
    token only ever exists in the signing request and the callback.
    """

    bundle_id: str
    status: BundleStatus
    vehicle_count: int = 0
    unsigned_artifact_ref: str | None = None
    signed_artifact_ref: str | None = None
    signing_log_ref: str | None = None
    sign_request_id: str | None = None
    resume_token: str | None = None
    resume_expires_at: datetime | None = None
    consumed_token: str | None = None
    error_code: str | None = None
    error_detail: str | None = None
    started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BUNDLE_STATUSES

    @property
    def is_waiting(self) -> bool:
        """True while parked on a signing request that has been sent."""
        return self.status == BundleStatus.SIGNING and self.sign_request_id is not None


@dataclass(frozen=True)
class Vehicle:
    """Immutable snapshot of a vehicle row."""

    bundle_id: str
    contract_id: str
    sequence_no: int
    status: VehicleStatus
    render_artifact_ref: str | None = None
    delivery_receipt: str | None = None
    delivery_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempt_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class BundleTransition:
    """One row of the append-only transition audit trail."""

    bundle_id: str
    transition_no: int
    from_status: BundleStatus
    to_status: BundleStatus
    detail: str | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class Continuation:
    """Handle returned by begin_wait; ``token`` is the raw capability."""

    bundle_id: str
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class ResumeResponse:
    """Result of ContinuationManager.resume()."""

    result: ResumeResult
    bundle_id: str | None = None


# =============================================================================
# Pure ordering
# =============================================================================


def order_for_assembly(vehicles: Iterable[Vehicle]) -> tuple[Vehicle, ...]:
    """Return vehicles in ascending sequence_no.

    Completion order of the render workers never matters; only sequence_no
    does.

    Raises:
        DuplicateSequenceError: Two vehicles share a sequence_no.
    """
    ordered = tuple(sorted(vehicles, key=lambda v: (v.sequence_no, v.contract_id)))
    for previous, current in zip(ordered, ordered[1:]):
        if previous.sequence_no == current.sequence_no:
            clashing = tuple(
                v.contract_id for v in ordered if v.sequence_no == current.sequence_no
            )
            raise DuplicateSequenceError(current.bundle_id, current.sequence_no, clashing)
    return ordered
