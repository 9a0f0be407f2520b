"""
CostingConfig schema.

Typed, frozen view of ``defaults/costing.yaml`` (plus environment
overrides).  The loader parses YAML into these dataclasses; nothing else
in the system reads the YAML or the environment directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from costing_kernel.domain.values import ZeroCostPolicy


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry for optimistic-lock and lock-timeout conflicts."""

    max_attempts: int = 3
    backoff_base: float = 0.05  # seconds; attempt n sleeps backoff_base * 2**n


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite+pysqlite:///:memory:"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10


@dataclass(frozen=True)
class AllocationConfig:
    # Only layers received at or before the shipment time are eligible
    respect_as_of: bool = True
    allow_partial_default: bool = False


@dataclass(frozen=True)
class BackfillConfig:
    zero_cost_policy: ZeroCostPolicy = ZeroCostPolicy.ALLOW_ZERO


@dataclass(frozen=True)
class CostingConfig:
    """Complete runtime configuration for the costing engine."""

    config_id: str = "default"
    version: int = 1
    money_decimal_places: int = 2
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    log_level: str = "INFO"
