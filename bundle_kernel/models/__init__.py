"""ORM models for bundle persistence."""

from bundle_kernel.models.bundle import BundleModel, BundleTransitionModel, VehicleModel

__all__ = ["BundleModel", "BundleTransitionModel", "VehicleModel"]
