"""
OrchestrationDispatcher -- runs many bundles concurrently.

Contract:
    ``submit(bundle_id)`` schedules ``run(bundle_id)`` on a bounded thread
    pool (``max_concurrent_bundles``) and returns a Future.  In inline mode
    the run happens on the caller's thread and the returned Future is
    already resolved.

Invariants enforced:
    - A parked bundle occupies no worker: ``run`` returns as soon as the
      signing request is recorded.
    - A failure inside one run never affects other bundles; it is logged
      and carried by that run's Future.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from bundle_kernel.logging_config import get_logger

logger = get_logger("batch.dispatcher")


class OrchestrationDispatcher:
    """Bounded pool of bundle drivers."""

    def __init__(
        self,
        run: Callable[[str], Any],
        max_concurrent_bundles: int = 4,
        inline: bool = False,
    ):
        if max_concurrent_bundles < 1:
            raise ValueError(
                f"max_concurrent_bundles must be >= 1, got {max_concurrent_bundles}"
            )
        self._run = run
        self._inline = inline
        self._max_workers = max_concurrent_bundles
        self._pool: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    @property
    def inline(self) -> bool:
        return self._inline

    def submit(self, bundle_id: str) -> Future:
        if self._inline:
            future: Future = Future()
            try:
                future.set_result(self._run(bundle_id))
            except Exception as exc:
                logger.exception("bundle_run_failed", extra={"bundle_id": bundle_id})
                future.set_exception(exc)
            return future

        future = self._executor().submit(self._run, bundle_id)
        future.add_done_callback(lambda f: self._log_outcome(bundle_id, f))
        logger.debug("bundle_run_submitted", extra={"bundle_id": bundle_id})
        return future

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
            logger.info("dispatcher_stopped")

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="bundle-driver",
                )
            return self._pool

    @staticmethod
    def _log_outcome(bundle_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "bundle_run_failed",
                extra={"bundle_id": bundle_id},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
