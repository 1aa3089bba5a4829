"""
JSON source adapter.

Handles JSON array (file is [{...}, {...}, ...]) and JSON Lines (one object per line).
Configurable: json_path for nested arrays (e.g. "data.contracts"), format "array" | "jsonl".
Non-object entries are skipped; malformed JSON raises json.JSONDecodeError.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator


def _get_nested(data: Any, path: str) -> Any:
    """Follow dot-separated path into dict/list. Returns None if key missing."""
    if not path.strip():
        return data
    for key in path.split("."):
        key = key.strip()
        if not key:
            continue
        if isinstance(data, list):
            try:
                data = data[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(data, dict) and key in data:
            data = data[key]
        else:
            return None
    return data


def _normalize_row_keys(item: dict[str, Any]) -> dict[str, Any]:
    return {str(k).strip().lower(): v for k, v in item.items() if isinstance(k, str)}


class JsonSourceAdapter:
    """Read JSON array or JSON Lines files as one dict per record."""

    def read(self, source_path: Path, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        fmt = options.get("format", "array")
        json_path = options.get("json_path")
        encoding = options.get("encoding", "utf-8")

        if fmt == "jsonl":
            with source_path.open("r", encoding=encoding) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    item = json.loads(line)
                    if isinstance(item, dict):
                        yield _normalize_row_keys(item)
            return

        with source_path.open("r", encoding=encoding) as f:
            data = json.load(f)
        root = _get_nested(data, json_path) if json_path else data
        if not isinstance(root, list):
            raise ValueError(
                f"{source_path}: expected a JSON array"
                + (f" at {json_path!r}" if json_path else "")
            )
        for item in root:
            if isinstance(item, dict):
                yield _normalize_row_keys(item)
