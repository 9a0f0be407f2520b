"""
costing_config -- single public entrypoint for costing configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains
    configuration.  It loads ``defaults/costing.yaml`` (or a caller-supplied
    file), applies ``COSTING_*`` environment overrides and returns a frozen
    ``CostingConfig``.

Architecture position:
    Configuration layer.  Sits above ``costing_kernel``; the kernel never
    imports from this package.

Audit relevance:
    Every call emits a ``COSTING_CONFIG_TRACE`` log entry with the config
    id, version and checksum of the effective configuration.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from costing_config.loader import (
    apply_env_overrides,
    compute_checksum,
    load_yaml_file,
    parse_config,
)
from costing_config.schema import (
    AllocationConfig,
    BackfillConfig,
    CostingConfig,
    DatabaseConfig,
    RetryConfig,
)
from costing_kernel.logging_config import get_logger

_logger = get_logger("config")

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "defaults" / "costing.yaml"


def get_active_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> CostingConfig:
    """
    Load the effective costing configuration.

    Args:
        path: YAML file to load.  Defaults to the packaged defaults.
        environ: Environment mapping for overrides.  Defaults to os.environ.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ConfigurationError: If a value is invalid.
    """
    data = load_yaml_file(path or _DEFAULT_CONFIG_FILE)
    data = apply_env_overrides(data, os.environ if environ is None else environ)
    config = parse_config(data)

    _logger.info(
        "COSTING_CONFIG_TRACE",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": compute_checksum(config),
            "zero_cost_policy": config.backfill.zero_cost_policy.value,
            "respect_as_of": config.allocation.respect_as_of,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "CostingConfig",
    "AllocationConfig",
    "BackfillConfig",
    "RetryConfig",
    "DatabaseConfig",
]
