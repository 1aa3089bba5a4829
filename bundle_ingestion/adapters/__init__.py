"""Source adapters for batch ingestion (file I/O only, no DB)."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

from bundle_ingestion.adapters.base import SourceAdapter
from bundle_ingestion.adapters.csv_adapter import CsvSourceAdapter
from bundle_ingestion.adapters.json_adapter import JsonSourceAdapter

__all__ = [
    "SourceAdapter",
    "CsvSourceAdapter",
    "JsonSourceAdapter",
    "adapter_for",
    "read_rows",
]

_BY_EXTENSION: dict[str, tuple[SourceAdapter, dict[str, Any]]] = {
    ".csv": (CsvSourceAdapter(), {}),
    ".json": (JsonSourceAdapter(), {"format": "array"}),
    ".jsonl": (JsonSourceAdapter(), {"format": "jsonl"}),
    ".ndjson": (JsonSourceAdapter(), {"format": "jsonl"}),
}

_BY_FORMAT: dict[str, tuple[SourceAdapter, dict[str, Any]]] = {
    "csv": _BY_EXTENSION[".csv"],
    "json": _BY_EXTENSION[".json"],
    "jsonl": _BY_EXTENSION[".jsonl"],
}


def adapter_for(
    source_path: Path,
    fmt: str | None = None,
) -> tuple[SourceAdapter, dict[str, Any]]:
    """Pick an adapter and its default options by explicit format or file extension."""
    if fmt is not None:
        try:
            return _BY_FORMAT[fmt.lower()]
        except KeyError:
            raise ValueError(
                f"Unsupported format {fmt!r}; expected one of {', '.join(sorted(_BY_FORMAT))}"
            ) from None
    try:
        return _BY_EXTENSION[source_path.suffix.lower()]
    except KeyError:
        raise ValueError(f"Cannot infer source format from {source_path.name!r}") from None


def read_rows(
    source_path: Path | str,
    fmt: str | None = None,
    options: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """Stream rows from a CSV / JSON / JSON Lines file."""
    path = Path(source_path)
    adapter, defaults = adapter_for(path, fmt)
    return adapter.read(path, {**defaults, **(options or {})})
