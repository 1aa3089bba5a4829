"""
bundle_config -- single public entrypoint for pipeline settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component reads configuration
    files directly.  The kernel MUST NEVER import from ``bundle_config``;
    the container in ``bundle_batch`` translates settings into kernel and
    batch constructor arguments.

Failure modes:
    - ``FileNotFoundError`` -- the override file does not exist.
    - ``ValueError`` -- unknown keys or invalid values.

Audit relevance:
    Every successful call emits a ``BUNDLE_CONFIG_TRACE`` log entry with the
    settings checksum, tying each run to the exact configuration used.
"""

from __future__ import annotations

import logging
from pathlib import Path

from bundle_config.loader import load_yaml_file, merge_settings, parse_settings
from bundle_config.schema import BundleSettings, RetrySettings

__all__ = ["BundleSettings", "RetrySettings", "get_active_settings"]

_logger = logging.getLogger("bundle_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(
    config_path: Path | str | None = None,
    overrides: dict | None = None,
) -> BundleSettings:
    """The ONLY public settings entrypoint.

    Loads the packaged defaults, overlays ``config_path`` (if given) and
    then ``overrides`` (if given), validates the result and returns a frozen
    ``BundleSettings``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        ValueError: If validation fails.
    """
    data = load_yaml_file(DEFAULTS_PATH)
    source = str(DEFAULTS_PATH)
    if config_path is not None:
        data = merge_settings(data, load_yaml_file(Path(config_path)))
        source = str(config_path)
    if overrides:
        data = merge_settings(data, overrides)

    settings = parse_settings(data)

    _logger.info(
        "BUNDLE_CONFIG_TRACE",
        extra={
            "trace_type": "BUNDLE_CONFIG_TRACE",
            "config_source": source,
            "checksum": settings.checksum,
            "render_concurrency": settings.render_concurrency,
            "delivery_concurrency": settings.delivery_concurrency,
            "max_concurrent_bundles": settings.max_concurrent_bundles,
        },
    )
    return settings
