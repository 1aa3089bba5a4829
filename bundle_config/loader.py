"""
Configuration Loader (``bundle_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into ``bundle_config.schema`` dataclasses.
The single public entry point for runtime settings is
``bundle_config.get_active_settings()``.

Invariants enforced
-------------------
* Unknown keys and invalid values raise ``ValueError`` with a descriptive
  message; nothing is silently defaulted or coerced from the wrong type.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  settings mapping for the config trace.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from bundle_config.schema import BundleSettings, RetrySettings
from bundle_kernel.utils.hashing import hash_payload

_TOP_LEVEL_KEYS = frozenset({
    "database_url",
    "render_concurrency",
    "delivery_concurrency",
    "max_concurrent_bundles",
    "retry",
    "signing_wait_seconds",
    "sweep_interval_seconds",
    "stall_after_seconds",
    "log_level",
})

_RETRY_KEYS = frozenset({"max_attempts", "backoff_base", "backoff_max", "jitter"})

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    return data


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``override`` on ``base``; the ``retry`` section merges key by key."""
    merged = dict(base)
    for key, value in override.items():
        if key == "retry" and isinstance(value, dict) and isinstance(merged.get("retry"), dict):
            merged["retry"] = {**merged["retry"], **value}
        else:
            merged[key] = value
    return merged


def _require_int(name: str, value: Any, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _require_number(name: str, value: Any, minimum: float, *, inclusive: bool = True) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if value < minimum or (not inclusive and value == minimum):
        op = ">=" if inclusive else ">"
        raise ValueError(f"{name} must be {op} {minimum}, got {value}")
    return float(value)


def _reject_unknown(section: str, data: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown {section} key(s): {', '.join(sorted(unknown))}")


def parse_retry(data: dict[str, Any]) -> RetrySettings:
    """Parse the ``retry`` section."""
    if not isinstance(data, dict):
        raise ValueError(f"retry must be a mapping, got {data!r}")
    _reject_unknown("retry", data, _RETRY_KEYS)
    defaults = RetrySettings()

    backoff_base = _require_number(
        "retry.backoff_base", data.get("backoff_base", defaults.backoff_base), 0.0,
    )
    backoff_max = _require_number(
        "retry.backoff_max", data.get("backoff_max", defaults.backoff_max), 0.0,
    )
    if backoff_max < backoff_base:
        raise ValueError(
            f"retry.backoff_max ({backoff_max}) must be >= retry.backoff_base ({backoff_base})"
        )
    jitter = _require_number("retry.jitter", data.get("jitter", defaults.jitter), 0.0)
    if jitter > backoff_max:
        raise ValueError(f"retry.jitter ({jitter}) must be <= retry.backoff_max ({backoff_max})")

    return RetrySettings(
        max_attempts=_require_int(
            "retry.max_attempts", data.get("max_attempts", defaults.max_attempts), 1,
        ),
        backoff_base=backoff_base,
        backoff_max=backoff_max,
        jitter=jitter,
    )


def parse_settings(data: dict[str, Any]) -> BundleSettings:
    """
    Parse a merged settings mapping into ``BundleSettings``.

    Raises:
        ValueError: on unknown keys or invalid values.
    """
    _reject_unknown("settings", data, _TOP_LEVEL_KEYS)
    defaults = BundleSettings()

    database_url = data.get("database_url", defaults.database_url)
    if not isinstance(database_url, str) or not database_url.strip():
        raise ValueError(f"database_url must be a non-empty string, got {database_url!r}")

    log_level = data.get("log_level", defaults.log_level)
    if not isinstance(log_level, str) or log_level.upper() not in _LOG_LEVELS:
        raise ValueError(
            f"log_level must be one of {', '.join(sorted(_LOG_LEVELS))}, got {log_level!r}"
        )

    return BundleSettings(
        database_url=database_url,
        render_concurrency=_require_int(
            "render_concurrency", data.get("render_concurrency", defaults.render_concurrency), 1,
        ),
        delivery_concurrency=_require_int(
            "delivery_concurrency",
            data.get("delivery_concurrency", defaults.delivery_concurrency),
            1,
        ),
        max_concurrent_bundles=_require_int(
            "max_concurrent_bundles",
            data.get("max_concurrent_bundles", defaults.max_concurrent_bundles),
            1,
        ),
        retry=parse_retry(data.get("retry", {})),
        signing_wait_seconds=_require_number(
            "signing_wait_seconds",
            data.get("signing_wait_seconds", defaults.signing_wait_seconds),
            0.0,
            inclusive=False,
        ),
        sweep_interval_seconds=_require_number(
            "sweep_interval_seconds",
            data.get("sweep_interval_seconds", defaults.sweep_interval_seconds),
            0.0,
            inclusive=False,
        ),
        stall_after_seconds=_require_number(
            "stall_after_seconds",
            data.get("stall_after_seconds", defaults.stall_after_seconds),
            0.0,
            inclusive=False,
        ),
        log_level=log_level.upper(),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    return hash_payload(data)
