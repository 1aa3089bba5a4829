"""
BundleServices -- DI container for the bundle pipeline.

Contract:
    Wires store, continuation manager, fan-out processors, orchestrator,
    admission gate, dispatcher and sweeper.  Single place where all
    pipeline dependencies are composed.

Architecture: bundle_batch (top-level).  The kernel never imports this
module; settings from ``bundle_config`` are translated into constructor
arguments here.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Hand-back: a resumed bundle and a stalled bundle both go through the
      dispatcher, so the number of concurrently driven bundles stays
      bounded.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from bundle_config.schema import BundleSettings, RetrySettings
from bundle_kernel.db.engine import build_engine, create_tables
from bundle_kernel.domain.clock import Clock, SystemClock
from bundle_kernel.logging_config import get_logger
from bundle_kernel.services.continuation import ContinuationManager
from bundle_kernel.services.state_store import BundleStateStore
from bundle_ingestion.services.admission_gate import AdmissionGate

from bundle_batch.collaborators.base import Collaborators
from bundle_batch.services.dispatcher import OrchestrationDispatcher
from bundle_batch.services.fanout import VehicleFanOut
from bundle_batch.services.orchestrator import BundleOrchestrator
from bundle_batch.services.retry import RetryPolicy
from bundle_batch.services.sweeper import ContinuationSweeper

logger = get_logger("batch.container")


def retry_policy_from_settings(retry: RetrySettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=retry.max_attempts,
        backoff_base=retry.backoff_base,
        backoff_max=retry.backoff_max,
        jitter=retry.jitter,
    )


class BundleServices:
    """DI container for the bundle pipeline.

    Non-goals:
        - Does NOT start the sweeper automatically; caller decides.
        - Does NOT create tables unless ``init_schema()`` is called.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        collaborators: Collaborators,
        settings: BundleSettings | None = None,
        clock: Clock | None = None,
        engine: Engine | None = None,
        inline: bool = False,
        sleep: Callable[[float], None] | None = None,
    ):
        self.settings = settings or BundleSettings()
        self.clock = clock or SystemClock()
        self.engine = engine
        self.collaborators = collaborators

        policy = retry_policy_from_settings(self.settings.retry)
        fanout_kwargs = {"sleep": sleep} if sleep is not None else {}

        self.store = BundleStateStore(session_factory, clock=self.clock)
        self.continuation = ContinuationManager(
            self.store,
            clock=self.clock,
            wait_seconds=self.settings.signing_wait_seconds,
        )
        self.render_fanout = VehicleFanOut(
            self.store, self.settings.render_concurrency, policy, **fanout_kwargs,
        )
        self.delivery_fanout = VehicleFanOut(
            self.store, self.settings.delivery_concurrency, policy, **fanout_kwargs,
        )
        self.orchestrator = BundleOrchestrator(
            store=self.store,
            continuation=self.continuation,
            renderer=collaborators.renderer,
            assembler=collaborators.assembler,
            signer=collaborators.signer,
            deliverer=collaborators.deliverer,
            render_fanout=self.render_fanout,
            delivery_fanout=self.delivery_fanout,
            retry_policy=policy,
            sleep=sleep,
        )
        self.dispatcher = OrchestrationDispatcher(
            self.orchestrator.run,
            max_concurrent_bundles=self.settings.max_concurrent_bundles,
            inline=inline,
        )
        self.continuation.set_on_resumed(self.dispatcher.submit)
        self.admission_gate = AdmissionGate(self.store, self.dispatcher.submit)
        self.sweeper = ContinuationSweeper(
            self.store,
            self.continuation,
            redispatch=self.dispatcher.submit,
            clock=self.clock,
            tick_interval_seconds=self.settings.sweep_interval_seconds,
            stall_after_seconds=self.settings.stall_after_seconds,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: BundleSettings,
        collaborators: Collaborators,
        clock: Clock | None = None,
        inline: bool = False,
        sleep: Callable[[float], None] | None = None,
    ) -> BundleServices:
        """Create a fully wired container with its own engine."""
        engine = build_engine(settings.database_url)
        session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(
            "bundle_services_created",
            extra={
                "config_checksum": settings.checksum,
                "inline": inline,
                "render_concurrency": settings.render_concurrency,
                "delivery_concurrency": settings.delivery_concurrency,
            },
        )
        return cls(
            session_factory=session_factory,
            collaborators=collaborators,
            settings=settings,
            clock=clock,
            engine=engine,
            inline=inline,
            sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init_schema(self) -> None:
        if self.engine is None:
            raise RuntimeError("init_schema() needs a container built with an engine")
        create_tables(self.engine)

    def close(self) -> None:
        """Stop the sweeper, drain the dispatcher and dispose the engine."""
        if self.sweeper.is_running:
            self.sweeper.stop()
        self.dispatcher.shutdown(wait=True)
        if self.engine is not None:
            self.engine.dispose()
