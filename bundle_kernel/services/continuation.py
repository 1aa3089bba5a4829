"""
ContinuationManager -- suspend/resume boundary around the signing wait.

Responsibility:
    Issues the capability token that the signing provider presents on its
    callback, persists the wait on the bundle row, and resolves the wait
    exactly once: either by a callback (resume) or by the deadline
    (expire).

Architecture position:
    Kernel > Services.  Sits on top of BundleStateStore.  Hands resumed
    bundles back to the orchestrator through an injected ``on_resumed``
    callable, so the kernel never imports the batch layer.

Invariants enforced:
    - The token is generated with ``secrets``; only its SHA-256 digest is
      stored (``resume_token`` while open, ``consumed_token`` once resolved).
    - Resume is authorised solely by possession of a token whose digest
      matches an open wait.  A caller-supplied bundle_id can narrow the
      match but never widen it.
    - Resolution is a CAS from SIGNING guarded on the token digest, so two
      concurrent callbacks with the same token produce exactly one
      SIGNING -> SIGNED / FAILED transition.
    - Expiry is terminal (SIGNING -> FAILED) and applied at most once.

Failure modes:
    - resume() never raises for unknown, consumed or expired tokens; those
      are reported as NOT_FOUND / ALREADY_RESUMED / EXPIRED.
    - ValidationError if a SUCCESS outcome carries no artifact_ref.
"""

from collections.abc import Callable
from datetime import timedelta
from typing import Any

from bundle_kernel.domain.clock import Clock, SystemClock
from bundle_kernel.domain.types import (
    Bundle,
    BundleStatus,
    Continuation,
    ResumeResponse,
    ResumeResult,
    SigningOutcome,
    TransitionResult,
)
from bundle_kernel.exceptions import (
    ConflictError,
    ContinuationAlreadyResolvedError,
    ContinuationExpiredError,
    UnknownContinuationError,
    ValidationError,
)
from bundle_kernel.logging_config import LogContext, get_logger
from bundle_kernel.services.state_store import BundleStateStore
from bundle_kernel.utils.hashing import new_continuation_token, token_digest

logger = get_logger("services.continuation")

SIGNING_REJECTED = "SIGNING_REJECTED"
SIGNING_WAIT_EXPIRED = "SIGNING_WAIT_EXPIRED"

DEFAULT_WAIT_SECONDS = 24 * 60 * 60


class ContinuationManager:
    """
    Token-addressed signing waits.

    Contract:
        ``begin_wait`` -> ``attach_request`` park a SIGNING bundle;
        ``resume`` and ``expire`` resolve it.  Nothing here blocks a thread
        while a bundle is parked.
    """

    def __init__(
        self,
        store: BundleStateStore,
        clock: Clock | None = None,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        on_resumed: Callable[[str], Any] | None = None,
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._wait = timedelta(seconds=wait_seconds)
        self._on_resumed = on_resumed

    def set_on_resumed(self, on_resumed: Callable[[str], Any] | None) -> None:
        """Register the hand-back to the orchestrator (wired by the container)."""
        self._on_resumed = on_resumed

    # =========================================================================
    # Suspend
    # =========================================================================

    def begin_wait(self, bundle_id: str) -> Continuation:
        """
        Issue a fresh token for a SIGNING bundle and persist its digest.

        A token issued earlier but never sent (crash before the signing
        request was recorded) is replaced under a guard on its digest, so a
        concurrent re-issue by another driver loses with ConflictError.
        """
        bundle = self._store.require_bundle(bundle_id)
        if bundle.status != BundleStatus.SIGNING:
            raise ConflictError(bundle_id, BundleStatus.SIGNING.value, bundle.status.value)

        token = new_continuation_token()
        expires_at = self._clock.now() + self._wait
        self._store.update_bundle_status(
            bundle_id,
            BundleStatus.SIGNING,
            BundleStatus.SIGNING,
            {
                "resume_token": token_digest(token),
                "resume_expires_at": expires_at,
                "sign_request_id": None,
            },
            expected={"resume_token": bundle.resume_token, "sign_request_id": None},
        )

        logger.info(
            "continuation_issued",
            extra={
                "bundle_id": bundle_id,
                "expires_at": expires_at,
                "replaced_unsent_token": bundle.resume_token is not None,
            },
        )
        return Continuation(bundle_id=bundle_id, token=token, expires_at=expires_at)

    def attach_request(self, continuation: Continuation, sign_request_id: str) -> None:
        """Record the provider's request id; the bundle is now parked."""
        self._store.update_bundle_status(
            continuation.bundle_id,
            BundleStatus.SIGNING,
            BundleStatus.SIGNING,
            {"sign_request_id": sign_request_id},
            expected={"resume_token": token_digest(continuation.token)},
        )
        logger.info(
            "bundle_parked_for_signing",
            extra={
                "bundle_id": continuation.bundle_id,
                "sign_request_id": sign_request_id,
            },
        )

    # =========================================================================
    # Resume
    # =========================================================================

    def resume(
        self,
        token: str,
        outcome: SigningOutcome,
        *,
        bundle_id: str | None = None,
        artifact_ref: str | None = None,
        log_ref: str | None = None,
        error_detail: str | None = None,
    ) -> ResumeResponse:
        """
        Resolve the wait identified by ``token`` exactly once.

        On SUCCESS the signed refs are recorded as part of the
        SIGNING -> SIGNED transition and the bundle is handed back to the
        orchestrator.  On FAILURE the bundle goes to FAILED.
        """
        outcome = SigningOutcome(outcome)
        if outcome == SigningOutcome.SUCCESS and not artifact_ref:
            raise ValidationError("artifact_ref is required for a SUCCESS outcome", field="artifact_ref")

        digest = token_digest(token)
        try:
            bundle = self._claimable_bundle(digest, bundle_id)
        except UnknownContinuationError:
            logger.warning("continuation_not_found", extra={"claimed_bundle_id": bundle_id})
            return ResumeResponse(ResumeResult.NOT_FOUND)
        except ContinuationAlreadyResolvedError as exc:
            logger.info("continuation_already_resumed", extra={"bundle_id": exc.bundle_id})
            return ResumeResponse(ResumeResult.ALREADY_RESUMED, exc.bundle_id)
        except ContinuationExpiredError as exc:
            logger.warning(
                "continuation_expired_on_resume",
                extra={"bundle_id": exc.bundle_id, "expired_at": exc.expired_at},
            )
            self.expire(exc.bundle_id)
            return ResumeResponse(ResumeResult.EXPIRED, exc.bundle_id)

        with LogContext.bind(bundle_id=bundle.bundle_id, stage="signing"):
            if outcome == SigningOutcome.SUCCESS:
                to_status = BundleStatus.SIGNED
                fields: dict[str, Any] = {
                    "signed_artifact_ref": artifact_ref,
                    "signing_log_ref": log_ref,
                }
            else:
                to_status = BundleStatus.FAILED
                fields = {
                    "error_code": SIGNING_REJECTED,
                    "error_detail": error_detail or "signing provider reported failure",
                }
            fields.update(resume_token=None, resume_expires_at=None, consumed_token=digest)

            try:
                result = self._store.update_bundle_status(
                    bundle.bundle_id,
                    BundleStatus.SIGNING,
                    to_status,
                    fields,
                    expected={"resume_token": digest},
                    detail=f"signing callback: {outcome.value}",
                )
            except ConflictError:
                result = None

            if result is not TransitionResult.APPLIED:
                return self._lost_resume(bundle.bundle_id)

            logger.info("continuation_resumed", extra={"outcome": outcome.value})

            if outcome == SigningOutcome.SUCCESS and self._on_resumed is not None:
                try:
                    self._on_resumed(bundle.bundle_id)
                except Exception:
                    # The transition is committed; the sweeper re-drives a
                    # SIGNED bundle that nobody picked up.
                    logger.exception("continuation_handoff_failed")

        return ResumeResponse(ResumeResult.RESUMED, bundle.bundle_id)

    def _lost_resume(self, bundle_id: str) -> ResumeResponse:
        """Report a resume whose CAS went to a concurrent callback or expiry."""
        current = self._store.require_bundle(bundle_id)
        if current.error_code == SIGNING_WAIT_EXPIRED:
            logger.warning("continuation_expired_during_resume")
            return ResumeResponse(ResumeResult.EXPIRED, bundle_id)
        logger.info("continuation_resume_lost_race")
        return ResumeResponse(ResumeResult.ALREADY_RESUMED, bundle_id)

    def _claimable_bundle(self, digest: str, bundle_id: str | None) -> Bundle:
        bundle = self._store.find_bundle_by_token_digest(digest)
        if bundle is None:
            consumed = self._store.find_bundle_by_consumed_digest(digest)
            if consumed is None or (bundle_id is not None and consumed.bundle_id != bundle_id):
                raise UnknownContinuationError()
            if consumed.error_code == SIGNING_WAIT_EXPIRED:
                raise ContinuationExpiredError(consumed.bundle_id, str(consumed.updated_at))
            raise ContinuationAlreadyResolvedError(consumed.bundle_id)

        if bundle_id is not None and bundle.bundle_id != bundle_id:
            raise UnknownContinuationError()
        if bundle.status != BundleStatus.SIGNING:
            raise ContinuationAlreadyResolvedError(bundle.bundle_id)
        if bundle.resume_expires_at is not None and bundle.resume_expires_at <= self._clock.now():
            raise ContinuationExpiredError(bundle.bundle_id, bundle.resume_expires_at.isoformat())
        return bundle

    # =========================================================================
    # Expire
    # =========================================================================

    def expire(self, bundle_id: str) -> bool:
        """
        Force SIGNING -> FAILED if the wait deadline has passed.

        Returns:
            True only for the call that applied the transition.
        """
        bundle = self._store.require_bundle(bundle_id)
        if bundle.status != BundleStatus.SIGNING or bundle.resume_expires_at is None:
            return False
        if bundle.resume_expires_at > self._clock.now():
            return False

        try:
            result = self._store.update_bundle_status(
                bundle_id,
                BundleStatus.SIGNING,
                BundleStatus.FAILED,
                {
                    "resume_token": None,
                    "resume_expires_at": None,
                    "consumed_token": bundle.resume_token,
                    "error_code": SIGNING_WAIT_EXPIRED,
                    "error_detail": (
                        f"signing callback not received by "
                        f"{bundle.resume_expires_at.isoformat()}"
                    ),
                },
                expected={"resume_token": bundle.resume_token},
                detail="signing wait expired",
            )
        except ConflictError:
            logger.info("continuation_expiry_lost_race", extra={"bundle_id": bundle_id})
            return False

        if result is TransitionResult.APPLIED:
            logger.warning("continuation_expired", extra={"bundle_id": bundle_id})
            return True
        return False
