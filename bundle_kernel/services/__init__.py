"""Kernel services: the state store and the continuation manager."""

from bundle_kernel.services.continuation import ContinuationManager
from bundle_kernel.services.state_store import BundleStateStore

__all__ = ["BundleStateStore", "ContinuationManager"]
