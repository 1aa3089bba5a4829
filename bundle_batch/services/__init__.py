"""Batch services: orchestrator, fan-out, retry, dispatcher and sweeper."""

from bundle_batch.services.dispatcher import OrchestrationDispatcher
from bundle_batch.services.fanout import FanOutOutcome, VehicleFanOut
from bundle_batch.services.orchestrator import BundleOrchestrator, BundleRunResult
from bundle_batch.services.retry import RetryPolicy, call_with_retry
from bundle_batch.services.sweeper import ContinuationSweeper, SweepReport

__all__ = [
    "BundleOrchestrator",
    "BundleRunResult",
    "ContinuationSweeper",
    "FanOutOutcome",
    "OrchestrationDispatcher",
    "RetryPolicy",
    "SweepReport",
    "VehicleFanOut",
    "call_with_retry",
]
