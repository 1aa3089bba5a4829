"""
ORM models for bundle, vehicle and transition persistence.

Contract:
    BundleModel, VehicleModel and BundleTransitionModel persist the only
    shared mutable state of the pipeline.  Each has ``to_dto()``; services
    never hand ORM instances across a session boundary.

Architecture: bundle_kernel/models. Imports from bundle_kernel.db.base only
(and domain types lazily inside to_dto).

Invariants enforced:
    - ``bundle_id`` is UNIQUE on bundles (create-if-absent arbiter).
    - (bundle_id, contract_id) is UNIQUE on vehicles.
    - sequence_no is NOT unique: a duplicate must be admitted so
      that initialization can fail the bundle with a validation error.
    - (bundle_id, transition_no) is UNIQUE on bundle_transitions.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bundle_kernel.db.base import Base, TrackedBase, as_utc

if TYPE_CHECKING:
    from bundle_kernel.domain.types import Bundle, BundleTransition, Vehicle


class BundleModel(TrackedBase):
    """One dealer-batch bundle."""

    __tablename__ = "bundles"

    __table_args__ = (
        Index("ix_bundles_status", "status"),
        Index("ix_bundles_resume_token", "resume_token"),
        Index("ix_bundles_consumed_token", "consumed_token"),
    )

    bundle_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    vehicle_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unsigned_artifact_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    signed_artifact_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    signing_log_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    sign_request_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    resume_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resume_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    consumed_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> Bundle:
        from bundle_kernel.domain.types import Bundle, BundleStatus

        return Bundle(
            bundle_id=self.bundle_id,
            status=BundleStatus(self.status),
            vehicle_count=self.vehicle_count,
            unsigned_artifact_ref=self.unsigned_artifact_ref,
            signed_artifact_ref=self.signed_artifact_ref,
            signing_log_ref=self.signing_log_ref,
            sign_request_id=self.sign_request_id,
            resume_token=self.resume_token,
            resume_expires_at=as_utc(self.resume_expires_at),
            consumed_token=self.consumed_token,
            error_code=self.error_code,
            error_detail=self.error_detail,
            started_at=as_utc(self.started_at),
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


class VehicleModel(TrackedBase):
    """One contract within a bundle."""

    __tablename__ = "vehicles"

    __table_args__ = (
        UniqueConstraint("bundle_id", "contract_id", name="uq_vehicles_bundle_contract"),
        Index("ix_vehicles_bundle_seq", "bundle_id", "sequence_no"),
    )

    bundle_id: Mapped[str] = mapped_column(
        String(200),
        ForeignKey("bundles.bundle_id"),
        nullable=False,
    )
    contract_id: Mapped[str] = mapped_column(String(200), nullable=False)
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    render_artifact_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    delivery_receipt: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def to_dto(self) -> Vehicle:
        from bundle_kernel.domain.types import Vehicle, VehicleStatus

        return Vehicle(
            bundle_id=self.bundle_id,
            contract_id=self.contract_id,
            sequence_no=self.sequence_no,
            status=VehicleStatus(self.status),
            render_artifact_ref=self.render_artifact_ref,
            delivery_receipt=self.delivery_receipt,
            delivery_id=self.delivery_id,
            error_code=self.error_code,
            error_message=self.error_message,
            attempt_count=self.attempt_count,
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )


class BundleTransitionModel(Base):
    """Append-only audit row, written in the same transaction as the CAS."""

    __tablename__ = "bundle_transitions"

    __table_args__ = (
        UniqueConstraint("bundle_id", "transition_no", name="uq_bundle_transitions_no"),
    )

    bundle_id: Mapped[str] = mapped_column(
        String(200),
        ForeignKey("bundles.bundle_id"),
        nullable=False,
    )
    transition_no: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self) -> BundleTransition:
        from bundle_kernel.domain.types import BundleStatus, BundleTransition

        return BundleTransition(
            bundle_id=self.bundle_id,
            transition_no=self.transition_no,
            from_status=BundleStatus(self.from_status),
            to_status=BundleStatus(self.to_status),
            detail=self.detail,
            occurred_at=as_utc(self.occurred_at),
        )
