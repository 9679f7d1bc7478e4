from datetime import datetime, timedelta, timezone

import pytest

from backend import grant_sweeps
from backend.app.ledger import Account, PlanTier, SweepSummary


def test_run_grant_sweep_updates_metrics(make_components):
    grant_sweeps._reset_metrics_for_testing()
    components = make_components()
    components.service.open_account("acct-a")
    components.service.open_account("acct-b")

    run_time = datetime(2024, 8, 1, 9, tzinfo=timezone.utc)
    result = grant_sweeps.run_grant_sweep(
        grant_sweeps.SweepKind.FREE_TIER, now=run_time, service=components.service
    )

    assert result.credits_granted == 10

    metrics = grant_sweeps.get_sweep_metrics()[grant_sweeps.SweepKind.FREE_TIER.value]
    assert metrics["runs"] == 1
    assert metrics["accounts_processed"] == 2
    assert metrics["credits_granted"] == 10
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] is None


def test_recurring_sweep_counts_downgrades(make_components):
    grant_sweeps._reset_metrics_for_testing()
    components = make_components()
    start = components.clock.now
    components.store.create(
        Account(
            account_id="acct-1",
            plan_tier=PlanTier.PREMIUM,
            subscription_plan_id="monthly",
            subscription_start=start,
            subscription_end=start + timedelta(days=30),
            last_grant_at=start,
            next_grant_due=start + timedelta(days=30),
        )
    )

    grant_sweeps.run_grant_sweep(
        grant_sweeps.SweepKind.RECURRING, now=start + timedelta(days=31), service=components.service
    )

    metrics = grant_sweeps.get_sweep_metrics()[grant_sweeps.SweepKind.RECURRING.value]
    assert metrics["downgraded"] == 1
    assert metrics["credits_granted"] == 0


class _FailingService:
    def reconcile_due_grants(self, now=None) -> SweepSummary:
        raise RuntimeError("database unavailable")


def test_run_grant_sweep_records_failure():
    grant_sweeps._reset_metrics_for_testing()
    run_time = datetime(2024, 8, 1, 9, tzinfo=timezone.utc)

    with pytest.raises(RuntimeError):
        grant_sweeps.run_grant_sweep(grant_sweeps.SweepKind.RECURRING, now=run_time, service=_FailingService())

    metrics = grant_sweeps.get_sweep_metrics()[grant_sweeps.SweepKind.RECURRING.value]
    assert metrics["runs"] == 1
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_success_at"] is None


def test_naive_run_time_is_treated_as_utc(make_components):
    grant_sweeps._reset_metrics_for_testing()
    components = make_components()

    grant_sweeps.run_grant_sweep(
        grant_sweeps.SweepKind.RECURRING, now=datetime(2024, 8, 1, 9), service=components.service
    )

    metrics = grant_sweeps.get_sweep_metrics()[grant_sweeps.SweepKind.RECURRING.value]
    assert metrics["last_run_at"] == datetime(2024, 8, 1, 9, tzinfo=timezone.utc).isoformat()
