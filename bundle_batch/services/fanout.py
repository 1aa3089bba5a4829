"""
VehicleFanOut -- bounded-concurrency map over a bundle's vehicles.

Contract:
    ``run(bundle, vehicles, stage, operation)`` dispatches ``operation`` for
    every vehicle still pending in ``stage`` on at most K worker threads,
    retries each independently on TransientError, records each outcome
    with a vehicle compare-and-set, waits for all of them to settle and
    returns a ``FanOutOutcome``.

Architecture: bundle_batch/services.  Uses BundleStateStore for vehicle
writes and the retry helper for backoff.  Knows nothing about what the
stage means for the bundle; the orchestrator decides whether failures are
fatal.

Invariants enforced:
    - Per-vehicle isolation: a permanent failure (or any unexpected
      exception) marks that vehicle ``*_FAILED`` and never aborts siblings.
    - Vehicles already settled for the stage (crash re-entry) are not
      re-dispatched; they are reported with their recorded outcome.
    - Outcome lists are ordered by sequence_no, never by completion order.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from bundle_kernel.domain.types import Bundle, Vehicle, VehicleStatus
from bundle_kernel.exceptions import PermanentError
from bundle_kernel.logging_config import LogContext, get_logger
from bundle_kernel.services.state_store import BundleStateStore

from bundle_batch.services.retry import RetryPolicy, call_with_retry

logger = get_logger("batch.fanout")

UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"

VehicleOperation = Callable[[Bundle, Vehicle], dict[str, Any]]


@dataclass(frozen=True)
class FanOutStage:
    """Which vehicle statuses a stage reads and writes."""

    name: str
    pending: frozenset[VehicleStatus]
    succeeded: VehicleStatus
    failed: VehicleStatus
    settled_ok: frozenset[VehicleStatus]


RENDER_STAGE = FanOutStage(
    name="render",
    pending=frozenset({VehicleStatus.READY}),
    succeeded=VehicleStatus.RENDERED,
    failed=VehicleStatus.RENDER_FAILED,
    settled_ok=frozenset({
        VehicleStatus.RENDERED,
        VehicleStatus.DELIVERED,
        VehicleStatus.DELIVERY_FAILED,
    }),
)

DELIVERY_STAGE = FanOutStage(
    name="delivery",
    pending=frozenset({VehicleStatus.RENDERED}),
    succeeded=VehicleStatus.DELIVERED,
    failed=VehicleStatus.DELIVERY_FAILED,
    settled_ok=frozenset({VehicleStatus.DELIVERED}),
)

# Out-of-band retry of a PARTIAL_FAILED bundle's failed deliveries.
DELIVERY_RETRY_STAGE = FanOutStage(
    name="delivery_retry",
    pending=frozenset({VehicleStatus.DELIVERY_FAILED}),
    succeeded=VehicleStatus.DELIVERED,
    failed=VehicleStatus.DELIVERY_FAILED,
    settled_ok=frozenset({VehicleStatus.DELIVERED}),
)


@dataclass(frozen=True)
class VehicleResult:
    """Settled outcome of one vehicle in one stage."""

    contract_id: str
    sequence_no: int
    status: VehicleStatus
    attempts: int = 0
    error_code: str | None = None
    error_message: str | None = None
    dispatched: bool = True  # False when the outcome was already recorded


@dataclass(frozen=True)
class FanOutOutcome:
    """Fan-in result: both lists ordered by sequence_no."""

    stage: str
    succeeded: tuple[VehicleResult, ...] = ()
    failed: tuple[VehicleResult, ...] = ()

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    @property
    def succeeded_ids(self) -> tuple[str, ...]:
        return tuple(r.contract_id for r in self.succeeded)

    @property
    def failed_ids(self) -> tuple[str, ...]:
        return tuple(r.contract_id for r in self.failed)

    @property
    def dispatched(self) -> int:
        return sum(1 for r in self.succeeded + self.failed if r.dispatched)


class VehicleFanOut:
    """Bounded-concurrency per-vehicle processor.

    Non-goals:
        - Does NOT change the bundle's status.
        - Does NOT hold a database session across operations; each vehicle
          write is its own store call.
    """

    def __init__(
        self,
        store: BundleStateStore,
        concurrency: int,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._store = store
        self._concurrency = concurrency
        self._policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def run(
        self,
        bundle: Bundle,
        vehicles: tuple[Vehicle, ...],
        stage: FanOutStage,
        operation: VehicleOperation,
    ) -> FanOutOutcome:
        results: list[VehicleResult] = []
        pending: list[Vehicle] = []

        for vehicle in vehicles:
            if vehicle.status in stage.pending:
                pending.append(vehicle)
            else:
                results.append(self._recorded_result(vehicle, stage))

        logger.info(
            "fanout_started",
            extra={
                "bundle_id": bundle.bundle_id,
                "stage": stage.name,
                "pending": len(pending),
                "already_settled": len(results),
                "concurrency": self._concurrency,
            },
        )

        if pending:
            workers = min(self._concurrency, len(pending))
            with ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix=f"fanout-{stage.name}",
            ) as pool:
                futures = [
                    pool.submit(self._process, bundle, vehicle, stage, operation)
                    for vehicle in pending
                ]
                # Fan-in: wait for every operation to settle.
                results.extend(f.result() for f in futures)

        results.sort(key=lambda r: (r.sequence_no, r.contract_id))
        succeeded = tuple(r for r in results if r.status in stage.settled_ok)
        failed = tuple(r for r in results if r.status not in stage.settled_ok)

        outcome = FanOutOutcome(stage=stage.name, succeeded=succeeded, failed=failed)
        logger.info(
            "fanout_completed",
            extra={
                "bundle_id": bundle.bundle_id,
                "stage": stage.name,
                "succeeded": len(succeeded),
                "failed": len(failed),
                "failed_contract_ids": list(outcome.failed_ids),
            },
        )
        return outcome

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _recorded_result(vehicle: Vehicle, stage: FanOutStage) -> VehicleResult:
        return VehicleResult(
            contract_id=vehicle.contract_id,
            sequence_no=vehicle.sequence_no,
            status=vehicle.status,
            attempts=vehicle.attempt_count,
            error_code=vehicle.error_code,
            error_message=vehicle.error_message,
            dispatched=False,
        )

    def _process(
        self,
        bundle: Bundle,
        vehicle: Vehicle,
        stage: FanOutStage,
        operation: VehicleOperation,
    ) -> VehicleResult:
        with LogContext.bind(
            bundle_id=bundle.bundle_id,
            contract_id=vehicle.contract_id,
            stage=stage.name,
        ):
            attempts = 0

            def _count(attempt: int) -> None:
                nonlocal attempts
                attempts = attempt

            try:
                fields = call_with_retry(
                    lambda: operation(bundle, vehicle),
                    self._policy,
                    operation=f"{stage.name}:{vehicle.contract_id}",
                    sleep=self._sleep,
                    on_attempt=_count,
                )
            except PermanentError as exc:
                logger.warning(
                    f"vehicle_{stage.name}_failed",
                    extra={"error_code": exc.code, "error": str(exc), "attempts": attempts},
                )
                return self._settle(
                    vehicle, stage, stage.failed,
                    {"error_code": exc.code, "error_message": str(exc), "attempt_count": attempts},
                )
            except Exception as exc:
                logger.exception(
                    f"vehicle_{stage.name}_failed",
                    extra={"error_code": UNHANDLED_EXCEPTION, "attempts": attempts},
                )
                return self._settle(
                    vehicle, stage, stage.failed,
                    {
                        "error_code": UNHANDLED_EXCEPTION,
                        "error_message": f"{type(exc).__name__}: {exc}",
                        "attempt_count": attempts,
                    },
                )

            logger.debug(f"vehicle_{stage.name}_succeeded", extra={"attempts": attempts})
            return self._settle(
                vehicle, stage, stage.succeeded,
                {**fields, "error_code": None, "error_message": None, "attempt_count": attempts},
            )

    def _settle(
        self,
        vehicle: Vehicle,
        stage: FanOutStage,
        to_status: VehicleStatus,
        fields: dict[str, Any],
    ) -> VehicleResult:
        moved = self._store.update_vehicle_status(
            vehicle.bundle_id, vehicle.contract_id, stage.pending, to_status, fields,
        )
        if not moved:
            # A concurrent driver settled this vehicle first; its record wins.
            current = self._store.get_vehicle(vehicle.bundle_id, vehicle.contract_id)
            logger.info(
                "vehicle_already_settled",
                extra={"recorded_status": current.status.value if current else None},
            )
            if current is not None:
                return self._recorded_result(current, stage)

        return VehicleResult(
            contract_id=vehicle.contract_id,
            sequence_no=vehicle.sequence_no,
            status=to_status,
            attempts=fields.get("attempt_count", 0),
            error_code=fields.get("error_code"),
            error_message=fields.get("error_message"),
        )
