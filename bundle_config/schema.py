"""
Configuration schema (``bundle_config.schema``).

Frozen dataclasses describing the pipeline's runtime settings.  Parsing
and validation live in ``bundle_config.loader``; callers only ever see
these types through ``bundle_config.get_active_settings()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RetrySettings:
    """Backoff policy for transient collaborator failures."""

    max_attempts: int = 3
    backoff_base: float = 0.5  # seconds before the first retry
    backoff_max: float = 30.0
    jitter: float = 0.2  # seconds of random delay added to each wait


@dataclass(frozen=True)
class BundleSettings:
    """Everything the container needs to wire the pipeline."""

    database_url: str = "sqlite:///bundles.db"
    render_concurrency: int = 8
    delivery_concurrency: int = 4
    max_concurrent_bundles: int = 4
    retry: RetrySettings = field(default_factory=RetrySettings)
    signing_wait_seconds: float = 86400.0
    sweep_interval_seconds: float = 60.0
    stall_after_seconds: float = 900.0
    log_level: str = "INFO"
    checksum: str = ""  # SHA-256 of the merged source mapping
