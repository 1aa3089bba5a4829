"""
CSV source adapter.

Uses csv.DictReader. Configurable: delimiter, encoding, skip_rows, quoting.
Handles BOM via utf-8-sig when encoding is utf-8. Streams rows.  Header
names are stripped and lowercased so ``Contract_ID`` and ``contract_id``
address the same field.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterator

_QUOTING = {
    "minimal": csv.QUOTE_MINIMAL,
    "all": csv.QUOTE_ALL,
    "none": csv.QUOTE_NONE,
}


def _get_encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding", "utf-8")
    if enc.lower() == "utf-8":
        return "utf-8-sig"  # Strip BOM if present
    return enc


def _get_quoting(options: dict[str, Any]) -> int:
    q = options.get("quoting", "minimal")
    if isinstance(q, int):
        return q
    return _QUOTING.get(str(q).lower(), csv.QUOTE_MINIMAL)


class CsvSourceAdapter:
    """Read CSV files as one dict per row."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        encoding = _get_encoding(options)
        delimiter = options.get("delimiter", ",")
        skip_rows = int(options.get("skip_rows", 0))
        quoting = _get_quoting(options)

        with source_path.open("r", encoding=encoding, newline="") as f:
            for _ in range(skip_rows):
                next(f, None)
            reader = csv.DictReader(f, delimiter=delimiter, quoting=quoting)
            if reader.fieldnames is None:
                return
            reader.fieldnames = [name.strip().lower() for name in reader.fieldnames]
            for row in reader:
                # Short rows come back with None values; blank lines are skipped by DictReader.
                yield {k: (v.strip() if isinstance(v, str) else v) for k, v in row.items() if k}
