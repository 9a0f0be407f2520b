"""
Configuration Loader (``costing_config.loader``).

Responsibility
--------------
Load the costing YAML file, apply environment overrides, and parse the
result into the frozen ``CostingConfig`` dataclasses from ``schema.py``.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass.
* Invalid values raise ``ConfigurationError`` naming the key; there are no
  silent coercions of unknown enum values.
* ``compute_checksum`` gives a deterministic SHA-256 of the effective
  configuration for change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid value  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from costing_config.schema import (
    AllocationConfig,
    BackfillConfig,
    CostingConfig,
    DatabaseConfig,
    RetryConfig,
)
from costing_kernel.domain.values import ZeroCostPolicy
from costing_kernel.exceptions import ConfigurationError

# Environment variable -> dotted key in the YAML document
ENV_OVERRIDES: dict[str, str] = {
    "COSTING_DATABASE_URL": "database.url",
    "COSTING_ZERO_COST_POLICY": "backfill.zero_cost_policy",
    "COSTING_LOG_LEVEL": "logging.level",
    "COSTING_RETRY_MAX_ATTEMPTS": "retry.max_attempts",
}

_VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Return a copy of ``data`` with any ``ENV_OVERRIDES`` variables applied."""
    merged = json.loads(json.dumps(data, default=str))
    for env_name, dotted in ENV_OVERRIDES.items():
        if env_name not in environ:
            continue
        section, key = dotted.split(".", 1)
        merged.setdefault(section, {})[key] = environ[env_name]
    return merged


def _int(value: Any, key: str, minimum: int = 0) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(key, value, "must be an integer") from exc
    if result < minimum:
        raise ConfigurationError(key, value, f"must be >= {minimum}")
    return result


def _float(value: Any, key: str) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(key, value, "must be a number") from exc
    if result < 0:
        raise ConfigurationError(key, value, "must be >= 0")
    return result


def _bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "1", "0", "yes", "no"):
        return value.lower() in ("true", "1", "yes")
    raise ConfigurationError(key, value, "must be a boolean")


def parse_zero_cost_policy(value: Any) -> ZeroCostPolicy:
    try:
        return ZeroCostPolicy(str(value).upper())
    except ValueError as exc:
        raise ConfigurationError(
            "backfill.zero_cost_policy",
            value,
            f"must be one of {[p.value for p in ZeroCostPolicy]}",
        ) from exc


def parse_config(data: Mapping[str, Any]) -> CostingConfig:
    """
    Parse a configuration dict into ``CostingConfig``.

    Missing sections fall back to the dataclass defaults; present values
    are validated.
    """
    alloc = data.get("allocation") or {}
    backfill = data.get("backfill") or {}
    retry = data.get("retry") or {}
    database = data.get("database") or {}
    logging_section = data.get("logging") or {}
    money = data.get("money") or {}

    log_level = str(logging_section.get("level", "INFO")).upper()
    if log_level not in _VALID_LOG_LEVELS:
        raise ConfigurationError("logging.level", log_level, f"must be one of {_VALID_LOG_LEVELS}")

    defaults = CostingConfig()
    return CostingConfig(
        config_id=str(data.get("config_id", defaults.config_id)),
        version=_int(data.get("version", defaults.version), "version", minimum=1),
        money_decimal_places=_int(
            money.get("decimal_places", defaults.money_decimal_places),
            "money.decimal_places",
        ),
        allocation=AllocationConfig(
            respect_as_of=_bool(
                alloc.get("respect_as_of", defaults.allocation.respect_as_of),
                "allocation.respect_as_of",
            ),
            allow_partial_default=_bool(
                alloc.get("allow_partial_default", defaults.allocation.allow_partial_default),
                "allocation.allow_partial_default",
            ),
        ),
        backfill=BackfillConfig(
            zero_cost_policy=parse_zero_cost_policy(
                backfill.get("zero_cost_policy", defaults.backfill.zero_cost_policy.value)
            ),
        ),
        retry=RetryConfig(
            max_attempts=_int(
                retry.get("max_attempts", defaults.retry.max_attempts),
                "retry.max_attempts",
                minimum=1,
            ),
            backoff_base=_float(
                retry.get("backoff_base", defaults.retry.backoff_base),
                "retry.backoff_base",
            ),
        ),
        database=DatabaseConfig(
            url=str(database.get("url", defaults.database.url)),
            echo=_bool(database.get("echo", defaults.database.echo), "database.echo"),
            pool_size=_int(database.get("pool_size", defaults.database.pool_size), "database.pool_size", 1),
            max_overflow=_int(
                database.get("max_overflow", defaults.database.max_overflow),
                "database.max_overflow",
            ),
        ),
        log_level=log_level,
    )


def compute_checksum(config: CostingConfig) -> str:
    """Deterministic SHA-256 of the effective configuration (URL excluded)."""
    payload = asdict(config)
    payload["database"].pop("url", None)
    canonical = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def log_level_number(config: CostingConfig) -> int:
    return logging.getLevelName(config.log_level)
