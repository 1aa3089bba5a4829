"""
ContinuationSweeper -- in-process polling loop for expiry and recovery.

Contract:
    Each ``tick()``:
      1. expires every SIGNING bundle whose deadline has passed (exactly
         once per bundle, via ContinuationManager.expire);
      2. re-dispatches started bundles that have not moved for
         ``stall_after_seconds`` in a state the orchestrator can drive
         (covers a crash between winning the start lock and the
         orchestrator running, or a driver dying mid-stage).

Architecture: bundle_batch/services.  Modelled on a polling scheduler:
``tick()`` is public for tests, ``start()`` / ``stop()`` run it on a
background thread.

Invariants enforced:
    - All timestamps from the injected Clock.
    - An error in one bundle never stops the tick.
    - Graceful shutdown: the stop signal is checked between bundles.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from bundle_kernel.domain.clock import Clock, SystemClock
from bundle_kernel.logging_config import get_logger
from bundle_kernel.services.continuation import ContinuationManager
from bundle_kernel.services.state_store import BundleStateStore

logger = get_logger("batch.sweeper")


@dataclass(frozen=True)
class SweepReport:
    expired: tuple[str, ...] = ()
    redispatched: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()


class ContinuationSweeper:
    """Expires overdue signing waits and re-drives stalled bundles.

    Non-goals:
        - NOT distributed (no leader election); running several sweepers
          is safe because every action is a CAS, only wasteful.
    """

    def __init__(
        self,
        store: BundleStateStore,
        continuation: ContinuationManager,
        redispatch: Callable[[str], Any] | None = None,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60.0,
        stall_after_seconds: float | None = 900.0,
    ):
        self._store = store
        self._continuation = continuation
        self._redispatch = redispatch
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._stall_after = (
            timedelta(seconds=stall_after_seconds) if stall_after_seconds is not None else None
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> SweepReport:
        """One sweep (public for testing)."""
        now = self._clock.now()
        expired: list[str] = []
        redispatched: list[str] = []
        errors: list[str] = []

        for bundle_id in self._store.list_expired_waits(now):
            if self._stop_event.is_set():
                break
            try:
                if self._continuation.expire(bundle_id):
                    expired.append(bundle_id)
            except Exception:
                logger.exception("sweeper_expire_failed", extra={"bundle_id": bundle_id})
                errors.append(bundle_id)

        if self._redispatch is not None and self._stall_after is not None:
            for bundle_id in self._store.list_stalled_bundles(now - self._stall_after):
                if self._stop_event.is_set():
                    break
                try:
                    self._redispatch(bundle_id)
                    redispatched.append(bundle_id)
                except Exception:
                    logger.exception("sweeper_redispatch_failed", extra={"bundle_id": bundle_id})
                    errors.append(bundle_id)

        report = SweepReport(
            expired=tuple(expired),
            redispatched=tuple(redispatched),
            errors=tuple(errors),
        )
        if expired or redispatched or errors:
            logger.info(
                "sweep_completed",
                extra={
                    "expired": list(report.expired),
                    "redispatched": list(report.redispatched),
                    "errors": len(report.errors),
                },
            )
        return report

    def start(self) -> None:
        """Start the sweeper in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="continuation-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("sweeper_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the sweeper to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("sweeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("sweeper_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)
