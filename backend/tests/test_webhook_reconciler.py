"""Tests for payment event reconciliation."""
from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.ledger import (
    Account,
    AccountNotFound,
    InvalidPackage,
    InvalidPlan,
    LedgerAuditEventType,
    LedgerEntryKind,
    PaymentEvent,
    PlanTier,
    ReconciliationOutcome,
    UnknownExternalRef,
)

CADENCE = timedelta(days=30)


def _checkout_event(event_id="evt_checkout_1", session_id="cs_1", price_id="price_monthly", account_id="acct-1"):
    return PaymentEvent(
        event_id=event_id,
        event_type="checkout.session.completed",
        data={
            "id": session_id,
            "mode": "subscription",
            "customer": "cus_1",
            "subscription": "sub_1",
            "price_id": price_id,
            "metadata": {"account_id": account_id},
        },
    )


def _invoice_event(invoice_id="in_1", event_id="evt_invoice_1", **data):
    payload = {"id": invoice_id, "customer": "cus_1", "subscription": "sub_1", "billing_reason": "subscription_cycle"}
    payload.update(data)
    return PaymentEvent(event_id=event_id, event_type="invoice.payment_succeeded", data=payload)


def _subscription_event(event_type, event_id="evt_sub_1", subscription_id="sub_1", **data):
    payload = {"id": subscription_id, "customer": "cus_1"}
    payload.update(data)
    return PaymentEvent(event_id=event_id, event_type=event_type, data=payload)


@pytest.fixture
def subscribed(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))
    ledger_components.service.handle_payment_event(_checkout_event())
    return ledger_components


def test_checkout_activates_subscription_with_first_month(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))
    now = ledger_components.clock.now

    result = ledger_components.service.handle_payment_event(_checkout_event())

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.transition == "subscription_activated"
    account = ledger_components.store.get("acct-1")
    assert account.plan_tier == PlanTier.PREMIUM
    assert account.subscription_plan_id == "monthly"
    assert account.subscription_start == now
    assert account.subscription_end == now + CADENCE
    assert account.last_grant_at == now
    assert account.next_grant_due == now + CADENCE
    assert account.balance == 25
    assert account.external_billing_ref.customer_id == "cus_1"
    assert account.external_billing_ref.subscription_id == "sub_1"
    entry = account.ledger_entries[0]
    assert entry.kind == LedgerEntryKind.INITIAL_GRANT
    assert entry.idempotency_key == "checkout:cs_1"
    assert ledger_components.event_logger.of_type(LedgerAuditEventType.SUBSCRIPTION_ACTIVATED)


def test_annual_checkout_drip_feeds_monthly_credits(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))
    now = ledger_components.clock.now

    ledger_components.service.handle_payment_event(_checkout_event(price_id="price_annual"))

    account = ledger_components.store.get("acct-1")
    assert account.balance == 25
    assert account.subscription_end == now + CADENCE * 12


def test_replayed_checkout_is_a_duplicate(subscribed):
    result = subscribed.service.handle_payment_event(_checkout_event())

    assert result.outcome == ReconciliationOutcome.DUPLICATE
    account = subscribed.store.get("acct-1")
    assert len(account.ledger_entries) == 1
    assert account.balance == 25


def test_redelivered_checkout_with_new_event_id_is_still_a_duplicate(subscribed):
    result = subscribed.service.handle_payment_event(_checkout_event(event_id="evt_checkout_retry"))

    assert result.outcome == ReconciliationOutcome.DUPLICATE
    assert subscribed.store.get("acct-1").balance == 25


def test_unknown_price_is_a_hard_failure(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))

    with pytest.raises(InvalidPlan):
        ledger_components.service.handle_payment_event(_checkout_event(price_id="price_mystery"))

    account = ledger_components.store.get("acct-1")
    assert account.plan_tier == PlanTier.FREE
    assert account.balance == 0
    assert len(ledger_components.alerts.rejected) == 1


def test_checkout_without_price_is_rejected(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))
    event = PaymentEvent(
        event_id="evt_np",
        event_type="checkout.session.completed",
        data={"id": "cs_np", "mode": "subscription", "metadata": {"account_id": "acct-1"}},
    )

    with pytest.raises(InvalidPlan):
        ledger_components.service.handle_payment_event(event)


def _package_event(amount_total, *, session_id="cs_pkg", credits=None, payment_status="paid"):
    metadata = {"userId": "acct-1"}
    if credits is not None:
        metadata["credits"] = str(credits)
    return PaymentEvent(
        event_id=f"evt_{session_id}",
        event_type="checkout.session.completed",
        data={
            "id": session_id,
            "mode": "payment",
            "amount_total": amount_total,
            "payment_status": payment_status,
            "customer": "cus_9",
            "metadata": metadata,
        },
    )


def test_package_purchase_adds_credits_without_plan_change(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))

    result = ledger_components.service.handle_payment_event(_package_event(1000, credits=50))

    assert result.transition == "credits_purchased"
    account = ledger_components.store.get("acct-1")
    assert account.balance == 50
    assert account.plan_tier == PlanTier.FREE
    assert account.ledger_entries[0].kind == LedgerEntryKind.PURCHASE
    assert account.external_billing_ref.customer_id == "cus_9"


def test_package_with_unknown_price_is_rejected(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))

    with pytest.raises(InvalidPackage):
        ledger_components.service.handle_payment_event(_package_event(750))

    assert ledger_components.store.get("acct-1").balance == 0
    assert len(ledger_components.alerts.rejected) == 1


def test_unpaid_package_checkout_is_ignored(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))

    result = ledger_components.service.handle_payment_event(_package_event(500, payment_status="unpaid"))

    assert result.outcome == ReconciliationOutcome.IGNORED
    assert ledger_components.store.get("acct-1").balance == 0


def test_renewal_extends_window_and_grants_month(subscribed):
    start = subscribed.clock.now
    subscribed.clock.advance(days=30)

    result = subscribed.service.handle_payment_event(_invoice_event())

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.transition == "subscription_renewed"
    account = subscribed.store.get("acct-1")
    assert account.subscription_end == start + CADENCE * 2
    assert account.balance == 50
    assert account.last_grant_at == start + CADENCE
    assert account.next_grant_due == start + CADENCE * 2
    assert account.ledger_entries[-1].kind == LedgerEntryKind.RECURRING_GRANT

    replay = subscribed.service.handle_payment_event(_invoice_event(event_id="evt_invoice_retry"))
    assert replay.outcome == ReconciliationOutcome.DUPLICATE
    assert subscribed.store.get("acct-1").balance == 50


def test_early_renewal_extends_from_current_end(subscribed):
    start = subscribed.clock.now
    subscribed.clock.advance(days=10)

    subscribed.service.handle_payment_event(_invoice_event())

    account = subscribed.store.get("acct-1")
    assert account.subscription_end == start + CADENCE * 2
    assert account.balance == 25


def test_renewal_with_new_price_switches_plan(subscribed):
    start = subscribed.clock.now
    subscribed.clock.advance(days=30)

    subscribed.service.handle_payment_event(_invoice_event(price_id="price_semiannual"))

    account = subscribed.store.get("acct-1")
    assert account.subscription_plan_id == "semiannual"
    assert account.subscription_end == start + CADENCE + CADENCE * 6


def test_subscription_create_invoice_is_recorded_without_extension(subscribed):
    end_before = subscribed.store.get("acct-1").subscription_end

    result = subscribed.service.handle_payment_event(_invoice_event(billing_reason="subscription_create"))
    replay = subscribed.service.handle_payment_event(_invoice_event(billing_reason="subscription_create"))

    assert result.transition == "invoice_recorded"
    assert replay.outcome == ReconciliationOutcome.DUPLICATE
    account = subscribed.store.get("acct-1")
    assert account.subscription_end == end_before
    assert account.balance == 25


def test_invoice_for_free_account_is_reported(ledger_components):
    ledger_components.store.create(Account(account_id="acct-1"))

    result = ledger_components.service.handle_payment_event(
        _invoice_event(metadata={"account_id": "acct-1"})
    )

    assert result.transition == "invoice_not_premium"
    assert ledger_components.store.get("acct-1").balance == 0
    assert ledger_components.alerts.ignored[0][1] == "acct-1"


def test_subscription_deleted_downgrades_without_clawback(subscribed):
    result = subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.deleted", status="canceled")
    )

    assert result.transition == "subscription_ended"
    account = subscribed.store.get("acct-1")
    assert account.plan_tier == PlanTier.FREE
    assert account.balance == 25
    assert account.subscription_end is None
    assert account.external_billing_ref.subscription_id is None
    assert account.external_billing_ref.customer_id == "cus_1"

    replay = subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.deleted", status="canceled")
    )
    assert replay.outcome == ReconciliationOutcome.DUPLICATE


@pytest.mark.parametrize("status_value", ["canceled", "unpaid", "incomplete_expired"])
def test_terminal_subscription_status_downgrades(subscribed, status_value):
    subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.updated", status=status_value)
    )

    assert subscribed.store.get("acct-1").plan_tier == PlanTier.FREE


def test_past_due_update_is_ignored(subscribed):
    result = subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.updated", status="past_due")
    )

    assert result.outcome == ReconciliationOutcome.IGNORED
    assert subscribed.store.get("acct-1").plan_tier == PlanTier.PREMIUM


def test_active_update_with_new_price_changes_plan_without_grant(subscribed):
    result = subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.updated", status="active", price_id="price_annual")
    )

    assert result.transition == "plan_changed"
    account = subscribed.store.get("acct-1")
    assert account.subscription_plan_id == "annual"
    assert account.balance == 25
    assert subscribed.event_logger.of_type(LedgerAuditEventType.SUBSCRIPTION_CHANGED)


def test_event_for_stale_subscription_is_ignored(subscribed):
    result = subscribed.service.handle_payment_event(
        _subscription_event("customer.subscription.deleted", subscription_id="sub_old")
    )

    assert result.outcome == ReconciliationOutcome.IGNORED
    assert subscribed.store.get("acct-1").plan_tier == PlanTier.PREMIUM


def test_unknown_external_ref_is_reported(ledger_components):
    event = _subscription_event("customer.subscription.deleted", subscription_id="sub_x", customer="cus_x")

    with pytest.raises(UnknownExternalRef) as excinfo:
        ledger_components.service.handle_payment_event(event)

    assert excinfo.value.customer_id == "cus_x"
    assert excinfo.value.subscription_id == "sub_x"
    assert ledger_components.alerts.unknown_refs[0][0].event_id == event.event_id


def test_metadata_account_that_does_not_exist_is_reported(ledger_components):
    with pytest.raises(AccountNotFound):
        ledger_components.service.handle_payment_event(
            _invoice_event(metadata={"account_id": "acct-missing"}, price_id="price_monthly")
        )

    assert ledger_components.alerts.missing_accounts[0][1].account_id == "acct-missing"
    assert ledger_components.store.get("acct-missing") is None


def test_checkout_opens_account_for_registered_user(ledger_components):
    result = ledger_components.service.handle_payment_event(_checkout_event(account_id="acct-new"))

    assert result.outcome == ReconciliationOutcome.APPLIED
    account = ledger_components.store.get("acct-new")
    assert account.plan_tier == PlanTier.PREMIUM
    assert account.balance == 25
    assert ledger_components.alerts.missing_accounts == []
    assert len(ledger_components.event_logger.of_type(LedgerAuditEventType.ACCOUNT_CREATED)) == 1


def test_resolution_prefers_customer_then_subscription(subscribed):
    subscribed.store.create(Account(account_id="acct-2"))
    subscribed.clock.advance(days=30)

    by_subscription = subscribed.service.reconciler.resolve_account_for_external_ref(
        _invoice_event(customer="cus_unknown")
    )
    by_customer = subscribed.service.reconciler.resolve_account_for_external_ref(
        _invoice_event(subscription="sub_unknown")
    )

    assert by_subscription.account_id == "acct-1"
    assert by_customer.account_id == "acct-1"


def test_unsupported_event_types_are_acknowledged(ledger_components):
    event = PaymentEvent(event_id="evt_misc", event_type="charge.refunded", data={"id": "ch_1"})

    result = ledger_components.service.handle_payment_event(event)

    assert result.outcome == ReconciliationOutcome.IGNORED
    assert result.idempotency_key == "event:evt_misc"


@pytest.fixture
def lapsed_annual(ledger_components):
    """Annual subscriber whose window the sweep closed before the renewal arrived."""

    ledger_components.store.create(Account(account_id="acct-1"))
    ledger_components.service.handle_payment_event(_checkout_event(price_id="price_annual"))
    start = ledger_components.clock.now
    summary = ledger_components.service.reconcile_due_grants(start + CADENCE * 12 + timedelta(days=1))
    assert summary.downgraded == 1
    ledger_components.clock.advance(days=365)
    return ledger_components


def test_paid_invoice_reactivates_account_expired_by_sweep(lapsed_annual):
    now = lapsed_annual.clock.now
    balance_before = lapsed_annual.store.get("acct-1").balance

    result = lapsed_annual.service.handle_payment_event(
        _invoice_event(invoice_id="in_2", price_id="price_annual")
    )

    assert result.outcome == ReconciliationOutcome.APPLIED
    assert result.transition == "subscription_reactivated"
    account = lapsed_annual.store.get("acct-1")
    assert account.plan_tier == PlanTier.PREMIUM
    assert account.subscription_plan_id == "annual"
    assert account.subscription_start == now
    assert account.subscription_end == now + CADENCE * 12
    assert account.next_grant_due == now + CADENCE
    assert account.external_billing_ref.subscription_id == "sub_1"
    assert account.balance == balance_before + 25
    assert account.ledger_entries[-1].idempotency_key == "invoice:in_2"
    assert lapsed_annual.alerts.ignored == []

    follow_up = lapsed_annual.service.handle_payment_event(
        _subscription_event("customer.subscription.updated", status="active", price_id="price_annual")
    )
    replay = lapsed_annual.service.handle_payment_event(
        _invoice_event(invoice_id="in_2", event_id="evt_invoice_retry", price_id="price_annual")
    )

    assert follow_up.outcome == ReconciliationOutcome.IGNORED
    assert replay.outcome == ReconciliationOutcome.DUPLICATE
    assert lapsed_annual.store.get("acct-1").balance == balance_before + 25


def test_active_update_reactivates_and_absorbs_its_invoice(lapsed_annual):
    now = lapsed_annual.clock.now
    balance_before = lapsed_annual.store.get("acct-1").balance

    result = lapsed_annual.service.handle_payment_event(
        _subscription_event(
            "customer.subscription.updated",
            event_id="evt_sub_active",
            status="active",
            price_id="price_annual",
            latest_invoice="in_2",
        )
    )
    invoice = lapsed_annual.service.handle_payment_event(
        _invoice_event(invoice_id="in_2", price_id="price_annual")
    )

    assert result.transition == "subscription_reactivated"
    assert invoice.outcome == ReconciliationOutcome.DUPLICATE
    account = lapsed_annual.store.get("acct-1")
    assert account.plan_tier == PlanTier.PREMIUM
    assert account.subscription_end == now + CADENCE * 12
    assert account.balance == balance_before + 25
    reactivations = [
        event
        for event in lapsed_annual.event_logger.of_type(LedgerAuditEventType.SUBSCRIPTION_ACTIVATED)
        if event.metadata.get("transition") == "subscription_reactivated"
    ]
    assert len(reactivations) == 1


def test_reactivated_account_receives_monthly_grants_again(lapsed_annual):
    lapsed_annual.service.handle_payment_event(_invoice_event(invoice_id="in_2", price_id="price_annual"))
    lapsed_annual.clock.advance(days=61)

    result = lapsed_annual.service.catch_up("acct-1")

    assert result.credits_granted == 50
    assert lapsed_annual.store.get("acct-1").plan_tier == PlanTier.PREMIUM


def test_invoice_without_plan_for_free_account_is_still_reported(lapsed_annual):
    result = lapsed_annual.service.handle_payment_event(_invoice_event(invoice_id="in_2"))

    assert result.transition == "invoice_not_premium"
    assert lapsed_annual.store.get("acct-1").plan_tier == PlanTier.FREE
    assert lapsed_annual.alerts.ignored[0][1] == "acct-1"
