"""
BundleStateStore -- durable conditional-write primitives for bundles.

Responsibility:
    The only component that mutates Bundle and Vehicle rows.  Every other
    component (admission gate, orchestrator, fan-out workers, continuation
    manager, sweeper) goes through these primitives, and every primitive is
    safe to call concurrently from many threads and processes.

Architecture position:
    Kernel > Services -- imperative shell over the ORM models.

Invariants enforced:
    - Create-if-absent: the UNIQUE constraints on ``bundles.bundle_id`` and
      ``vehicles(bundle_id, contract_id)`` are the race arbiter; the loser's
      IntegrityError is converted into ALREADY_EXISTS, never surfaced.
    - Start-once: ``started_at`` is set by a single conditional UPDATE
      (``WHERE started_at IS NULL``); exactly one caller sees rowcount 1.
    - Closed after start: a vehicle insert is guarded on the header's
      ``started_at IS NULL`` in the same transaction.
    - Compare-and-set: status changes are a single
      ``UPDATE ... WHERE status = :from`` whose rowcount decides the winner,
      so two concurrent writers can never silently overwrite each other.
    - Lifecycle: only edges in BUNDLE_TRANSITIONS / VEHICLE_TRANSITIONS are
      accepted.
    - Audit: every applied bundle transition appends a bundle_transitions
      row inside the same transaction as the CAS.
    - vehicle_count is written only on the NEW -> READY edge.

Transaction model:
    Each primitive opens its own short session from the injected
    ``sessionmaker`` and commits before returning.  No session or ORM
    instance is shared across threads; callers receive frozen DTOs.
"""

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from bundle_kernel.domain.clock import Clock, SystemClock
from bundle_kernel.domain.types import (
    Bundle,
    BundleStatus,
    BundleTransition,
    CreateResult,
    LockResult,
    TransitionResult,
    Vehicle,
    VehicleStatus,
    is_valid_bundle_transition,
    is_valid_vehicle_transition,
    order_for_assembly,
)
from bundle_kernel.exceptions import (
    BundleAlreadyStartedError,
    BundleNotFoundError,
    ConflictError,
    InvalidTransitionError,
)
from bundle_kernel.logging_config import get_logger
from bundle_kernel.models.bundle import BundleModel, BundleTransitionModel, VehicleModel

logger = get_logger("services.state_store")

BUNDLE_MUTABLE_FIELDS: frozenset[str] = frozenset({
    "vehicle_count",
    "unsigned_artifact_ref",
    "signed_artifact_ref",
    "signing_log_ref",
    "sign_request_id",
    "resume_token",
    "resume_expires_at",
    "consumed_token",
    "error_code",
    "error_detail",
})

VEHICLE_MUTABLE_FIELDS: frozenset[str] = frozenset({
    "render_artifact_ref",
    "delivery_receipt",
    "delivery_id",
    "error_code",
    "error_message",
    "attempt_count",
})

# Statuses the orchestrator can drive forward without external input.
DRIVEABLE_STATUSES: frozenset[BundleStatus] = frozenset({
    BundleStatus.NEW,
    BundleStatus.READY,
    BundleStatus.ASSEMBLING,
    BundleStatus.SIGNED,
    BundleStatus.DELIVERING,
})


class BundleStateStore:
    """
    Conditional-write store for bundles, vehicles and transitions.

    Contract:
        Every method is atomic on its own and idempotent where the method
        name says so (``*_if_absent``, ``try_lock_start``).  Status updates
        report APPLIED / ALREADY_APPLIED or raise ConflictError.

    Non-goals:
        - Does NOT decide what the next stage is (BundleOrchestrator).
        - Does NOT retry conflicts; a lost CAS is reported to the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Create-if-absent
    # =========================================================================

    def create_header_if_absent(self, bundle_id: str) -> CreateResult:
        """Insert a NEW bundle header unless one already exists."""
        if self.get_bundle(bundle_id) is not None:
            return CreateResult.ALREADY_EXISTS

        now = self._clock.now()
        try:
            with self._transaction() as session:
                session.add(BundleModel(
                    bundle_id=bundle_id,
                    status=BundleStatus.NEW.value,
                    vehicle_count=0,
                    created_at=now,
                    updated_at=now,
                ))
        except IntegrityError:
            # Concurrent admission inserted the same header first.
            if self.get_bundle(bundle_id) is None:
                raise
            logger.debug("bundle_header_insert_raced", extra={"bundle_id": bundle_id})
            return CreateResult.ALREADY_EXISTS

        logger.info("bundle_header_created", extra={"bundle_id": bundle_id})
        return CreateResult.INSERTED

    def create_vehicle_if_absent(
        self,
        bundle_id: str,
        contract_id: str,
        sequence_no: int,
    ) -> tuple[CreateResult, Vehicle]:
        """
        Insert a READY vehicle unless (bundle_id, contract_id) exists.

        Returns the outcome together with the stored vehicle, so a replay
        can compare what it tried to write against what is persisted.  An
        existing record is never rewritten.

        The insert is guarded on the header's ``started_at IS NULL`` in the
        same transaction, so vehicle_count fixed at initialization always
        equals the number of vehicles.

        Raises:
            BundleAlreadyStartedError: The bundle's start lock is taken and
                the vehicle is not already stored.
            BundleNotFoundError: No header for ``bundle_id``.
        """
        existing = self.get_vehicle(bundle_id, contract_id)
        if existing is not None:
            return CreateResult.ALREADY_EXISTS, existing

        now = self._clock.now()
        created: Vehicle | None = None
        try:
            with self._transaction() as session:
                # Takes the header row lock; try_lock_start waits for this commit.
                guard = session.execute(
                    update(BundleModel)
                    .where(
                        BundleModel.bundle_id == bundle_id,
                        BundleModel.started_at.is_(None),
                    )
                    .values(updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if guard.rowcount == 1:
                    model = VehicleModel(
                        bundle_id=bundle_id,
                        contract_id=contract_id,
                        sequence_no=sequence_no,
                        status=VehicleStatus.READY.value,
                        attempt_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(model)
                    session.flush()
                    created = model.to_dto()
        except IntegrityError:
            existing = self.get_vehicle(bundle_id, contract_id)
            if existing is None:
                raise
            logger.debug(
                "vehicle_insert_raced",
                extra={"bundle_id": bundle_id, "contract_id": contract_id},
            )
            return CreateResult.ALREADY_EXISTS, existing

        if created is None:
            # Written by a concurrent admission just before the lock was taken.
            existing = self.get_vehicle(bundle_id, contract_id)
            if existing is not None:
                return CreateResult.ALREADY_EXISTS, existing
            if self.get_bundle(bundle_id) is None:
                raise BundleNotFoundError(bundle_id)
            logger.warning(
                "vehicle_rejected_bundle_started",
                extra={"bundle_id": bundle_id, "contract_id": contract_id},
            )
            raise BundleAlreadyStartedError(bundle_id, contract_id)

        logger.debug(
            "vehicle_created",
            extra={
                "bundle_id": bundle_id,
                "contract_id": contract_id,
                "sequence_no": sequence_no,
            },
        )
        return CreateResult.INSERTED, created

    # =========================================================================
    # Start-once lock
    # =========================================================================

    def try_lock_start(self, bundle_id: str) -> LockResult:
        """Set ``started_at`` exactly once per bundle."""
        now = self._clock.now()
        with self._transaction() as session:
            result = session.execute(
                update(BundleModel)
                .where(
                    BundleModel.bundle_id == bundle_id,
                    BundleModel.started_at.is_(None),
                )
                .values(started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            acquired = result.rowcount == 1

        if acquired:
            logger.info("bundle_start_lock_acquired", extra={"bundle_id": bundle_id})
            return LockResult.ACQUIRED

        if self.get_bundle(bundle_id) is None:
            raise BundleNotFoundError(bundle_id)
        logger.debug("bundle_already_started", extra={"bundle_id": bundle_id})
        return LockResult.ALREADY_STARTED

    # =========================================================================
    # Compare-and-set
    # =========================================================================

    def update_bundle_status(
        self,
        bundle_id: str,
        from_status: BundleStatus,
        to_status: BundleStatus,
        fields: Mapping[str, Any] | None = None,
        *,
        expected: Mapping[str, Any] | None = None,
        detail: str | None = None,
    ) -> TransitionResult:
        """
        Atomically move a bundle from ``from_status`` to ``to_status``.

        ``from_status == to_status`` is a guarded field update (no audit
        row).  ``expected`` adds equality guards on other columns, e.g. the
        current resume token digest.

        Returns:
            APPLIED when this call won the CAS.  ALREADY_APPLIED when the
            bundle is already in ``to_status`` (idempotent re-application).

        Raises:
            InvalidTransitionError: The edge is not in the lifecycle graph.
            ConflictError: The bundle is in some other status, or an
                ``expected`` guard did not match.
            BundleNotFoundError: No such bundle.
        """
        from_status = BundleStatus(from_status)
        to_status = BundleStatus(to_status)
        fields = dict(fields or {})

        if from_status != to_status and not is_valid_bundle_transition(from_status, to_status):
            raise InvalidTransitionError("bundle", from_status.value, to_status.value)
        self._check_fields(fields, BUNDLE_MUTABLE_FIELDS, "bundle")
        if "vehicle_count" in fields and from_status != BundleStatus.NEW:
            raise ValueError("vehicle_count can only be set when leaving NEW")

        now = self._clock.now()
        conditions = [
            BundleModel.bundle_id == bundle_id,
            BundleModel.status == from_status.value,
        ]
        for name, value in (expected or {}).items():
            self._check_fields({name: value}, BUNDLE_MUTABLE_FIELDS, "bundle")
            column = getattr(BundleModel, name)
            conditions.append(column.is_(None) if value is None else column == value)

        with self._transaction() as session:
            result = session.execute(
                update(BundleModel)
                .where(*conditions)
                .values(status=to_status.value, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied and from_status != to_status:
                self._append_transition(session, bundle_id, from_status, to_status, detail, now)

        if applied:
            if from_status != to_status:
                logger.info(
                    "bundle_transition_applied",
                    extra={
                        "bundle_id": bundle_id,
                        "from_status": from_status.value,
                        "to_status": to_status.value,
                    },
                )
            return TransitionResult.APPLIED

        current = self.get_bundle(bundle_id)
        if current is None:
            raise BundleNotFoundError(bundle_id)
        if from_status != to_status and current.status == to_status:
            logger.debug(
                "bundle_transition_already_applied",
                extra={"bundle_id": bundle_id, "to_status": to_status.value},
            )
            return TransitionResult.ALREADY_APPLIED

        logger.info(
            "bundle_transition_conflict",
            extra={
                "bundle_id": bundle_id,
                "expected_status": from_status.value,
                "actual_status": current.status.value,
                "to_status": to_status.value,
            },
        )
        raise ConflictError(bundle_id, from_status.value, current.status.value)

    def _append_transition(
        self,
        session: Session,
        bundle_id: str,
        from_status: BundleStatus,
        to_status: BundleStatus,
        detail: str | None,
        occurred_at: datetime,
    ) -> None:
        count = session.scalar(
            select(func.count())
            .select_from(BundleTransitionModel)
            .where(BundleTransitionModel.bundle_id == bundle_id)
        )
        session.add(BundleTransitionModel(
            bundle_id=bundle_id,
            transition_no=(count or 0) + 1,
            from_status=from_status.value,
            to_status=to_status.value,
            detail=detail,
            occurred_at=occurred_at,
        ))

    def update_vehicle_status(
        self,
        bundle_id: str,
        contract_id: str,
        from_statuses: Iterable[VehicleStatus],
        to_status: VehicleStatus,
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Compare-and-set on one vehicle's status.

        Returns:
            True if this call moved the vehicle, False if it was no longer
            in any of ``from_statuses``.
        """
        to_status = VehicleStatus(to_status)
        sources = [VehicleStatus(s) for s in from_statuses]
        for source in sources:
            if not is_valid_vehicle_transition(source, to_status):
                raise InvalidTransitionError("vehicle", source.value, to_status.value)
        fields = dict(fields or {})
        self._check_fields(fields, VEHICLE_MUTABLE_FIELDS, "vehicle")

        now = self._clock.now()
        with self._transaction() as session:
            result = session.execute(
                update(VehicleModel)
                .where(
                    VehicleModel.bundle_id == bundle_id,
                    VehicleModel.contract_id == contract_id,
                    VehicleModel.status.in_([s.value for s in sources]),
                )
                .values(status=to_status.value, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    @staticmethod
    def _check_fields(fields: Mapping[str, Any], allowed: frozenset[str], entity: str) -> None:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Fields not writable on {entity}: {sorted(unknown)}")

    # =========================================================================
    # Reads
    # =========================================================================

    def get_bundle(self, bundle_id: str) -> Bundle | None:
        with self._transaction() as session:
            model = session.scalar(
                select(BundleModel).where(BundleModel.bundle_id == bundle_id)
            )
            return model.to_dto() if model is not None else None

    def require_bundle(self, bundle_id: str) -> Bundle:
        bundle = self.get_bundle(bundle_id)
        if bundle is None:
            raise BundleNotFoundError(bundle_id)
        return bundle

    def get_vehicle(self, bundle_id: str, contract_id: str) -> Vehicle | None:
        with self._transaction() as session:
            model = session.scalar(
                select(VehicleModel).where(
                    VehicleModel.bundle_id == bundle_id,
                    VehicleModel.contract_id == contract_id,
                )
            )
            return model.to_dto() if model is not None else None

    def list_vehicles(self, bundle_id: str) -> tuple[Vehicle, ...]:
        """All vehicles of a bundle by (sequence_no, contract_id), unvalidated."""
        with self._transaction() as session:
            models = session.scalars(
                select(VehicleModel)
                .where(VehicleModel.bundle_id == bundle_id)
                .order_by(VehicleModel.sequence_no, VehicleModel.contract_id)
            ).all()
            return tuple(m.to_dto() for m in models)

    def query_vehicles(self, bundle_id: str) -> tuple[Vehicle, ...]:
        """
        All vehicles of a bundle in ascending sequence_no.

        Raises:
            DuplicateSequenceError: Two vehicles share a sequence_no.
        """
        return order_for_assembly(self.list_vehicles(bundle_id))

    def find_bundle_by_token_digest(self, digest: str) -> Bundle | None:
        """The bundle whose open wait carries this token digest."""
        with self._transaction() as session:
            model = session.scalar(
                select(BundleModel).where(BundleModel.resume_token == digest)
            )
            return model.to_dto() if model is not None else None

    def find_bundle_by_consumed_digest(self, digest: str) -> Bundle | None:
        """The bundle whose wait was already resolved with this token digest."""
        with self._transaction() as session:
            model = session.scalar(
                select(BundleModel).where(BundleModel.consumed_token == digest)
            )
            return model.to_dto() if model is not None else None

    def list_expired_waits(self, now: datetime) -> tuple[str, ...]:
        """Bundle ids parked in SIGNING whose deadline is at or before ``now``."""
        with self._transaction() as session:
            rows = session.scalars(
                select(BundleModel.bundle_id)
                .where(
                    BundleModel.status == BundleStatus.SIGNING.value,
                    BundleModel.resume_expires_at.is_not(None),
                    BundleModel.resume_expires_at <= now,
                )
                .order_by(BundleModel.resume_expires_at, BundleModel.bundle_id)
            ).all()
            return tuple(rows)

    def list_stalled_bundles(self, older_than: datetime) -> tuple[str, ...]:
        """
        Started bundles that have not moved since ``older_than`` and can be
        driven without external input.

        A SIGNING bundle counts only while no signing request was recorded,
        i.e. the driver died between issuing the token and calling the
        signing provider.
        """
        with self._transaction() as session:
            rows = session.scalars(
                select(BundleModel.bundle_id)
                .where(
                    BundleModel.started_at.is_not(None),
                    BundleModel.updated_at <= older_than,
                    or_(
                        BundleModel.status.in_([s.value for s in DRIVEABLE_STATUSES]),
                        (BundleModel.status == BundleStatus.SIGNING.value)
                        & BundleModel.sign_request_id.is_(None),
                    ),
                )
                .order_by(BundleModel.updated_at, BundleModel.bundle_id)
            ).all()
            return tuple(rows)

    def list_transitions(self, bundle_id: str) -> tuple[BundleTransition, ...]:
        with self._transaction() as session:
            models = session.scalars(
                select(BundleTransitionModel)
                .where(BundleTransitionModel.bundle_id == bundle_id)
                .order_by(BundleTransitionModel.transition_no)
            ).all()
            return tuple(m.to_dto() for m in models)
