"""
BundleOrchestrator -- persisted state machine that drives one bundle.

Contract:
    ``run(bundle_id)`` re-reads the persisted status and executes stages
    until the bundle is terminal, parked in SIGNING, or another driver
    wins a transition.  It is safe to call any number of times, from any
    number of threads or processes, at any point of the lifecycle.

Architecture: bundle_batch/services.  Uses BundleStateStore for every
state change, VehicleFanOut for the render and delivery stages,
ContinuationManager for the signing wait and the collaborator Protocols
for external work.

Stage table:

    NEW         validate unique sequence_no, fix vehicle_count   -> READY
    READY       render fan-out (any failure is bundle-fatal)      -> ASSEMBLING
    ASSEMBLING  assemble refs in sequence_no order                 -> SIGNING
    SIGNING     issue token, request signing, park                 (callback)
    SIGNED      check signed refs recorded by the callback         -> DELIVERING
    DELIVERING  delivery fan-out (failures are isolated)           -> DELIVERED | PARTIAL_FAILED

Invariants enforced:
    - Every transition is a CAS with an explicit from_status.  A lost CAS
      means someone else advanced the bundle: log and stop.
    - No status is cached across a stage; each loop iteration re-reads.
    - The orchestrator never blocks on the signing callback.
    - Any unexpected exception becomes FAILED with the error recorded;
      bundle identity is never lost to an unhandled fault.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from bundle_kernel.domain.types import (
    Bundle,
    BundleStatus,
    TransitionResult,
    Vehicle,
    VehicleStatus,
)
from bundle_kernel.exceptions import (
    BundleKernelError,
    BundleNotFoundError,
    ConflictError,
    ValidationError,
)
from bundle_kernel.logging_config import LogContext, get_logger
from bundle_kernel.services.continuation import ContinuationManager
from bundle_kernel.services.state_store import BundleStateStore

from bundle_batch.collaborators.base import (
    AssemblyClient,
    AssemblyRequest,
    DeliveryClient,
    DeliveryRequest,
    RenderClient,
    RenderRequest,
    SigningClient,
    SigningRequest,
)
from bundle_batch.services.fanout import (
    DELIVERY_RETRY_STAGE,
    DELIVERY_STAGE,
    RENDER_STAGE,
    FanOutOutcome,
    VehicleFanOut,
)
from bundle_batch.services.retry import RetryPolicy, call_with_retry

logger = get_logger("batch.orchestrator")

RENDER_FAILED = "RENDER_FAILED"
DELIVERY_PARTIAL = "DELIVERY_PARTIAL"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


@dataclass(frozen=True)
class BundleRunResult:
    """What a driver observed when it stopped driving a bundle."""

    bundle_id: str
    status: BundleStatus
    parked: bool = False  # waiting on the signing callback
    failed_contract_ids: tuple[str, ...] = ()
    error_code: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            BundleStatus.DELIVERED,
            BundleStatus.PARTIAL_FAILED,
            BundleStatus.FAILED,
        )


class BundleOrchestrator:
    """Drives bundles through the lifecycle.

    Non-goals:
        - Does NOT decide which bundles to run (dispatcher / sweeper).
        - Does NOT accept external callbacks (ContinuationManager).
    """

    def __init__(
        self,
        store: BundleStateStore,
        continuation: ContinuationManager,
        renderer: RenderClient,
        assembler: AssemblyClient,
        signer: SigningClient,
        deliverer: DeliveryClient,
        render_fanout: VehicleFanOut,
        delivery_fanout: VehicleFanOut,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self._store = store
        self._continuation = continuation
        self._renderer = renderer
        self._assembler = assembler
        self._signer = signer
        self._deliverer = deliverer
        self._render_fanout = render_fanout
        self._delivery_fanout = delivery_fanout
        self._policy = retry_policy or RetryPolicy()
        self._sleep_kwargs: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}

        self._handlers: dict[BundleStatus, Callable[[Bundle], bool]] = {
            BundleStatus.NEW: self._initialize,
            BundleStatus.READY: self._render,
            BundleStatus.ASSEMBLING: self._assemble,
            BundleStatus.SIGNING: self._request_signature,
            BundleStatus.SIGNED: self._record_signature,
            BundleStatus.DELIVERING: self._deliver,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    def run(self, bundle_id: str) -> BundleRunResult:
        """
        Drive a bundle as far as it can go right now.

        Raises:
            BundleNotFoundError: No such bundle.
        """
        with LogContext.bind(bundle_id=bundle_id):
            while True:
                bundle = self._store.require_bundle(bundle_id)
                handler = self._handlers.get(bundle.status)
                if handler is None:
                    return self._result(bundle)

                with LogContext.bind(stage=bundle.status.value.lower()):
                    try:
                        advanced = handler(bundle)
                    except ConflictError as exc:
                        logger.info(
                            "bundle_run_yielded",
                            extra={"actual_status": exc.actual_status},
                        )
                        return self._result(self._store.require_bundle(bundle_id))
                    except BundleNotFoundError:
                        raise
                    except BundleKernelError as exc:
                        self._fail(bundle, exc.code, str(exc))
                        return self._result(self._store.require_bundle(bundle_id))
                    except Exception as exc:
                        logger.exception("bundle_stage_crashed")
                        self._fail(bundle, UNEXPECTED_ERROR, f"{type(exc).__name__}: {exc}")
                        return self._result(self._store.require_bundle(bundle_id))

                if not advanced:
                    return self._result(self._store.require_bundle(bundle_id))

    def retry_failed_deliveries(self, bundle_id: str) -> BundleRunResult:
        """
        Re-run delivery for the DELIVERY_FAILED vehicles of a PARTIAL_FAILED
        bundle.  The bundle becomes DELIVERED only if every vehicle is then
        delivered.
        """
        with LogContext.bind(bundle_id=bundle_id, stage="delivery_retry"):
            bundle = self._store.require_bundle(bundle_id)
            if bundle.status != BundleStatus.PARTIAL_FAILED:
                raise ConflictError(
                    bundle_id, BundleStatus.PARTIAL_FAILED.value, bundle.status.value,
                )

            vehicles = self._store.query_vehicles(bundle_id)
            outcome = self._delivery_fanout.run(
                bundle, vehicles, DELIVERY_RETRY_STAGE, self._deliver_vehicle,
            )
            if outcome.all_succeeded:
                try:
                    self._store.update_bundle_status(
                        bundle_id,
                        BundleStatus.PARTIAL_FAILED,
                        BundleStatus.DELIVERED,
                        {"error_code": None, "error_detail": None},
                        detail="out-of-band delivery retry",
                    )
                except ConflictError:
                    logger.info("delivery_retry_yielded")
            logger.info(
                "delivery_retry_completed",
                extra={"retried": outcome.dispatched, "still_failed": list(outcome.failed_ids)},
            )
            return self._result(self._store.require_bundle(bundle_id))

    # =========================================================================
    # Stages -- each returns True to keep driving, False to stop
    # =========================================================================

    def _initialize(self, bundle: Bundle) -> bool:
        vehicles = self._store.query_vehicles(bundle.bundle_id)
        if not vehicles:
            raise ValidationError(f"Bundle {bundle.bundle_id} has no vehicles")
        return self._advance(
            bundle,
            BundleStatus.READY,
            {"vehicle_count": len(vehicles)},
            detail=f"{len(vehicles)} vehicle(s)",
        )

    def _render(self, bundle: Bundle) -> bool:
        vehicles = self._store.query_vehicles(bundle.bundle_id)
        outcome = self._render_fanout.run(bundle, vehicles, RENDER_STAGE, self._render_vehicle)
        if not outcome.all_succeeded:
            # Assembly needs every page.
            self._fail(bundle, RENDER_FAILED, self._failure_detail(outcome, "render"))
            return False
        return self._advance(bundle, BundleStatus.ASSEMBLING)

    def _assemble(self, bundle: Bundle) -> bool:
        vehicles = self._store.query_vehicles(bundle.bundle_id)
        missing = [v.contract_id for v in vehicles if not v.render_artifact_ref]
        if missing:
            raise ValidationError(
                f"Vehicles without a rendered artifact: {', '.join(missing)}",
                field="render_artifact_ref",
            )
        request = AssemblyRequest(
            bundle_id=bundle.bundle_id,
            artifact_refs=tuple(v.render_artifact_ref for v in vehicles),
        )
        response = call_with_retry(
            lambda: self._assembler.assemble(request),
            self._policy,
            operation="assemble",
            **self._sleep_kwargs,
        )
        return self._advance(
            bundle,
            BundleStatus.SIGNING,
            {"unsigned_artifact_ref": response.unsigned_artifact_ref},
        )

    def _request_signature(self, bundle: Bundle) -> bool:
        if bundle.sign_request_id is not None:
            logger.debug("bundle_still_waiting_for_signature")
            return False

        continuation = self._continuation.begin_wait(bundle.bundle_id)
        request = SigningRequest(
            bundle_id=bundle.bundle_id,
            unsigned_artifact_ref=bundle.unsigned_artifact_ref,
            callback_token=continuation.token,
        )
        response = call_with_retry(
            lambda: self._signer.request_signing(request),
            self._policy,
            operation="request_signing",
            **self._sleep_kwargs,
        )
        self._continuation.attach_request(continuation, response.sign_request_id)
        # Parked: the worker is released; the callback resumes the bundle.
        return False

    def _record_signature(self, bundle: Bundle) -> bool:
        if not bundle.signed_artifact_ref:
            raise ValidationError(
                f"Bundle {bundle.bundle_id} is SIGNED without a signed_artifact_ref",
                field="signed_artifact_ref",
            )
        return self._advance(bundle, BundleStatus.DELIVERING)

    def _deliver(self, bundle: Bundle) -> bool:
        vehicles = self._store.query_vehicles(bundle.bundle_id)
        outcome = self._delivery_fanout.run(
            bundle, vehicles, DELIVERY_STAGE, self._deliver_vehicle,
        )
        if outcome.all_succeeded:
            return self._advance(bundle, BundleStatus.DELIVERED)
        return self._advance(
            bundle,
            BundleStatus.PARTIAL_FAILED,
            {
                "error_code": DELIVERY_PARTIAL,
                "error_detail": self._failure_detail(outcome, "delivery"),
            },
        )

    # =========================================================================
    # Per-vehicle operations
    # =========================================================================

    def _render_vehicle(self, bundle: Bundle, vehicle: Vehicle) -> dict[str, Any]:
        response = self._renderer.render(
            RenderRequest(bundle_id=bundle.bundle_id, contract_id=vehicle.contract_id)
        )
        return {"render_artifact_ref": response.artifact_ref}

    def _deliver_vehicle(self, bundle: Bundle, vehicle: Vehicle) -> dict[str, Any]:
        response = self._deliverer.deliver(
            DeliveryRequest(
                bundle_id=bundle.bundle_id,
                contract_id=vehicle.contract_id,
                signed_artifact_ref=bundle.signed_artifact_ref,
                log_ref=bundle.signing_log_ref,
            )
        )
        return {"delivery_id": response.delivery_id, "delivery_receipt": response.receipt}

    # =========================================================================
    # Internal
    # =========================================================================

    def _advance(
        self,
        bundle: Bundle,
        to_status: BundleStatus,
        fields: dict[str, Any] | None = None,
        detail: str | None = None,
    ) -> bool:
        result = self._store.update_bundle_status(
            bundle.bundle_id, bundle.status, to_status, fields, detail=detail,
        )
        if result is TransitionResult.ALREADY_APPLIED:
            # A peer driver made this move and keeps driving.
            logger.info("bundle_transition_already_applied_by_peer", extra={"to_status": to_status.value})
            return False
        return True

    def _fail(self, bundle: Bundle, error_code: str, detail: str) -> None:
        logger.warning("bundle_failed", extra={"error_code": error_code, "detail": detail})
        fields: dict[str, Any] = {"error_code": error_code, "error_detail": detail}
        if bundle.status == BundleStatus.SIGNING:
            fields.update(resume_token=None, resume_expires_at=None)
        try:
            self._store.update_bundle_status(
                bundle.bundle_id,
                bundle.status,
                BundleStatus.FAILED,
                fields,
                detail=error_code,
            )
        except ConflictError:
            logger.info("bundle_fail_yielded")

    @staticmethod
    def _failure_detail(outcome: FanOutOutcome, stage: str) -> str:
        return (
            f"{len(outcome.failed)} vehicle(s) failed {stage}: "
            + ", ".join(outcome.failed_ids)
        )

    def _result(self, bundle: Bundle) -> BundleRunResult:
        failed: tuple[str, ...] = ()
        if bundle.status in (BundleStatus.FAILED, BundleStatus.PARTIAL_FAILED):
            failed = tuple(
                v.contract_id
                for v in self._store.list_vehicles(bundle.bundle_id)
                if v.status in (VehicleStatus.RENDER_FAILED, VehicleStatus.DELIVERY_FAILED)
            )
        return BundleRunResult(
            bundle_id=bundle.bundle_id,
            status=bundle.status,
            parked=bundle.is_waiting,
            failed_contract_ids=failed,
            error_code=bundle.error_code,
        )
