"""
Source adapter protocol.

Contract:
    SourceAdapter.read() yields one dict per source record (streaming).

Architecture: bundle_ingestion/adapters. File I/O only, no DB or kernel imports.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable


@runtime_checkable
class SourceAdapter(Protocol):
    """Protocol for reading structured source files into record dicts."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        """Yield one dict per source record. Streams; does not load entire file."""
        ...
