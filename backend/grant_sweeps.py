"""Scheduler integration for periodic credit grant sweeps."""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.ledger import LedgerService, SweepSummary
from backend.app.services.ledger import get_ledger_service

logger = logging.getLogger(__name__)


class SweepKind(str, Enum):
    RECURRING = "recurring"
    FREE_TIER = "free_tier"


_scheduler_lock = Lock()
_workers: Dict[str, "_SweepWorker"] = {}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "accounts_processed": 0,
        "credits_granted": 0,
        "downgraded": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_SWEEP_METRICS: Dict[str, Dict[str, object]] = {kind.value: _empty_metrics() for kind in SweepKind}
_metrics_lock = Lock()


def _record_run_start(kind: SweepKind, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[kind.value]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(kind: SweepKind, completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[kind.value]
        metrics["accounts_processed"] = int(metrics.get("accounts_processed", 0)) + summary.accounts_processed
        metrics["credits_granted"] = int(metrics.get("credits_granted", 0)) + summary.credits_granted
        metrics["downgraded"] = int(metrics.get("downgraded", 0)) + summary.downgraded
        metrics["failures"] = int(metrics.get("failures", 0)) + summary.failures
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(kind: SweepKind, error: Exception) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[kind.value]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def run_grant_sweep(
    kind: SweepKind,
    *,
    now: Optional[datetime] = None,
    service: Optional[LedgerService] = None,
) -> SweepSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    ledger = service or get_ledger_service()
    _record_run_start(kind, current_time)
    try:
        if kind == SweepKind.FREE_TIER:
            summary = ledger.grant_free_tier(current_time)
        else:
            summary = ledger.reconcile_due_grants(current_time)
    except Exception as exc:
        _record_run_failure(kind, exc)
        logger.exception("Credit grant sweep failed", extra={"sweep": kind.value})
        raise
    _record_run_success(kind, current_time, summary)
    logger.info("Credit grant sweep completed", extra={"sweep": kind.value, **summary.as_dict()})
    return summary


class _SweepWorker(Thread):
    def __init__(self, kind: SweepKind, *, initial_delay: float, interval: float):
        super().__init__(daemon=True)
        self.kind = kind
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                run_grant_sweep(self.kind)
            except Exception:
                # Logged and counted in run_grant_sweep; keep the schedule.
                pass
            if self._stop.wait(self._interval):
                break


def _sweep_interval_seconds() -> float:
    raw = os.getenv("LEDGER_SWEEP_INTERVAL_SECONDS", "3600")
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError("LEDGER_SWEEP_INTERVAL_SECONDS must be a number") from exc


def start_grant_scheduler(*, initial_delay: float = 60.0, interval: Optional[float] = None) -> None:
    with _scheduler_lock:
        if _workers:
            return
        period = interval if interval is not None else _sweep_interval_seconds()
        for kind in SweepKind:
            _workers[kind.value] = _SweepWorker(kind, initial_delay=initial_delay, interval=period)
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Credit grant scheduler started",
            extra={"initial_delay_seconds": initial_delay, "interval_seconds": period},
        )


def shutdown_grant_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Credit grant scheduler stopped")


def get_sweep_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _SWEEP_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _SWEEP_METRICS.values():
            metrics.update(_empty_metrics())


__all__ = [
    "SweepKind",
    "get_sweep_metrics",
    "run_grant_sweep",
    "shutdown_grant_scheduler",
    "start_grant_scheduler",
]
