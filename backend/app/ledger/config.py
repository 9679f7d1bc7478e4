"""Ledger configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Mapping, Optional
import os


@dataclass(frozen=True)
class LedgerConfig:
    """Configuration for credit grants, service pricing and conflict retries."""

    cadence_days: int = 30
    free_tier_enabled: bool = True
    free_tier_monthly_credits: int = 5
    free_tier_interval_days: int = 30
    scan_cost: int = 1
    delivery_cost: int = 2
    conflict_max_attempts: int = 5
    conflict_backoff_seconds: float = 0.05
    conflict_max_backoff_seconds: float = 1.0
    cron_secret: Optional[str] = None
    price_plan_map: Dict[str, str] = field(default_factory=dict)

    @property
    def cadence(self) -> timedelta:
        return timedelta(days=self.cadence_days)

    @property
    def free_tier_interval(self) -> timedelta:
        return timedelta(days=self.free_tier_interval_days)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


_PRICE_ENV_KEYS = {
    "LEDGER_PRICE_MONTHLY": "monthly",
    "LEDGER_PRICE_SEMIANNUAL": "semiannual",
    "LEDGER_PRICE_ANNUAL": "annual",
}


def _load_price_plan_map(env_mapping: Mapping[str, str]) -> Dict[str, str]:
    price_map: Dict[str, str] = {}
    for env_key, plan_id in _PRICE_ENV_KEYS.items():
        price_id = (env_mapping.get(env_key) or "").strip()
        if price_id:
            price_map[price_id] = plan_id
    return price_map


def load_ledger_config(env: Optional[Mapping[str, str]] = None) -> LedgerConfig:
    """Load :class:`LedgerConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    cadence_days = _to_int(env_mapping.get("LEDGER_CADENCE_DAYS"), default=30)
    if cadence_days < 1:
        raise ValueError("LEDGER_CADENCE_DAYS must be >= 1")

    free_tier_interval_days = _to_int(env_mapping.get("LEDGER_FREE_TIER_INTERVAL_DAYS"), default=30)
    if free_tier_interval_days < 1:
        raise ValueError("LEDGER_FREE_TIER_INTERVAL_DAYS must be >= 1")

    scan_cost = _to_int(env_mapping.get("LEDGER_SCAN_COST"), default=1)
    delivery_cost = _to_int(env_mapping.get("LEDGER_DELIVERY_COST"), default=2)
    if scan_cost < 1 or delivery_cost < 1:
        raise ValueError("Service costs must be >= 1 credit")

    return LedgerConfig(
        cadence_days=cadence_days,
        free_tier_enabled=_to_bool(env_mapping.get("LEDGER_FREE_TIER_ENABLED"), default=True),
        free_tier_monthly_credits=max(0, _to_int(env_mapping.get("LEDGER_FREE_TIER_MONTHLY_CREDITS"), default=5)),
        free_tier_interval_days=free_tier_interval_days,
        scan_cost=scan_cost,
        delivery_cost=delivery_cost,
        conflict_max_attempts=max(1, _to_int(env_mapping.get("LEDGER_CONFLICT_MAX_ATTEMPTS"), default=5)),
        conflict_backoff_seconds=max(0.0, _to_float(env_mapping.get("LEDGER_CONFLICT_BACKOFF_SECONDS"), default=0.05)),
        conflict_max_backoff_seconds=max(
            0.0, _to_float(env_mapping.get("LEDGER_CONFLICT_MAX_BACKOFF_SECONDS"), default=1.0)
        ),
        cron_secret=env_mapping.get("CRON_SECRET") or None,
        price_plan_map=_load_price_plan_map(env_mapping),
    )


__all__ = ["LedgerConfig", "load_ledger_config"]
