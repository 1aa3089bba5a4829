"""Database infrastructure for the bundle kernel."""

from bundle_kernel.db.base import Base, TrackedBase, UUIDString
from bundle_kernel.db.engine import build_engine, create_tables

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "build_engine",
    "create_tables",
]
