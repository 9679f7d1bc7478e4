from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from backend.app.ledger import (
    Account,
    ExternalBillingRef,
    LedgerConfig,
    PlanTier,
    ReconciliationOutcome,
    ServiceKind,
)
from backend.app.routes import ledger as ledger_routes
from backend.app.schemas.ledger import (
    AdjustmentRequest,
    PaymentWebhookPayload,
    RefundRequest,
    ServiceRequestCreate,
    SpendRequest,
)

USER = SimpleNamespace(id=7, role="user")
ADMIN = SimpleNamespace(id=1, role="admin")


@pytest.fixture
def components(monkeypatch, make_components):
    built = make_components()
    monkeypatch.setattr(ledger_routes, "get_ledger_service", lambda: built.service)
    return built


def _fund(components, account_id="7", credits=5):
    components.service.open_account(account_id)
    components.service.adjust(account_id, credits, "test funding")


def test_get_balance_opens_account_for_new_user(components):
    response = ledger_routes.get_balance(current_user=USER)

    assert response.account_id == "7"
    assert response.balance == 0
    assert response.plan_tier == PlanTier.FREE
    assert components.store.get("7") is not None


def test_get_history_lists_newest_first(components):
    _fund(components)
    components.service.spend("7", 2, "Delivery")

    response = ledger_routes.get_history(limit=50, kind=None, current_user=USER)

    assert [entry.amount for entry in response.entries] == [-2, 5]


def test_spend_returns_entry_and_balance(components):
    _fund(components)

    response = ledger_routes.spend_credits(
        SpendRequest(amount=2, description="Scan letter"),
        current_user=USER,
    )

    assert response.entry.amount == -2
    assert response.balance == 3


def test_spend_without_balance_is_payment_required(components):
    _fund(components, credits=1)

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.spend_credits(SpendRequest(amount=2, description="Delivery"), current_user=USER)

    assert excinfo.value.status_code == 402
    assert components.service.get_balance("7") == 1


def test_spend_by_new_user_is_payment_required(components):
    newcomer = SimpleNamespace(id=99, role="user")

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.spend_credits(SpendRequest(amount=1, description="Scan letter"), current_user=newcomer)

    assert excinfo.value.status_code == 402
    assert excinfo.value.detail["error"] == "insufficient_balance"
    assert components.service.get_balance("99") == 0


def test_service_request_by_new_user_is_payment_required(components):
    newcomer = SimpleNamespace(id=99, role="user")

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.create_service_request(
            ServiceRequestCreate(services=[ServiceKind.SCAN]),
            current_user=newcomer,
        )

    assert excinfo.value.status_code == 402
    assert list(components.service.list_service_requests("99")) == []


def test_refund_requires_admin(components):
    _fund(components)

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.refund_credits(RefundRequest(amount=1, description="Scan failed"), current_user=USER)

    assert excinfo.value.status_code == 403


def test_admin_refund_targets_account(components):
    _fund(components, credits=1)

    response = ledger_routes.refund_credits(
        RefundRequest(amount=2, description="Scan failed", account_id="7"),
        current_user=ADMIN,
    )

    assert response.balance == 3
    assert response.entry.kind.value == "refund"


def test_adjust_requires_admin(components):
    components.service.open_account("7")

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.adjust_credits(
            AdjustmentRequest(account_id="7", amount=5, reason="goodwill"),
            current_user=USER,
        )

    assert excinfo.value.status_code == 403
    assert components.service.get_balance("7") == 0


def test_admin_adjustment_records_actor(components):
    components.service.open_account("7")

    response = ledger_routes.adjust_credits(
        AdjustmentRequest(account_id="7", amount=5, reason="goodwill"),
        current_user=ADMIN,
    )

    assert response.balance == 5
    assert response.entry.reference == "1"
    assert response.entry.description == "Admin adjustment: goodwill"


def test_adjustment_for_unknown_account_is_not_found(components):
    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.adjust_credits(
            AdjustmentRequest(account_id="ghost", amount=5, reason="goodwill"),
            current_user=ADMIN,
        )

    assert excinfo.value.status_code == 404


def test_audit_account_reports_consistency(components):
    _fund(components)

    response = ledger_routes.audit_account("7", current_user=ADMIN)

    assert response.consistent is True
    assert response.cached_balance == 5
    assert response.entry_count == 1


def test_service_request_charges_caller(components):
    _fund(components)

    response = ledger_routes.create_service_request(
        ServiceRequestCreate(
            services=[ServiceKind.SCAN, ServiceKind.DELIVERY],
            letter_id="letter-1",
            delivery_address="1 Main St",
        ),
        current_user=USER,
    )

    assert response.cost == 3
    assert response.balance == 2
    assert response.services == [ServiceKind.DELIVERY, ServiceKind.SCAN]


def test_service_request_without_address_is_bad_request(components):
    _fund(components)

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.create_service_request(
            ServiceRequestCreate(services=[ServiceKind.DELIVERY]),
            current_user=USER,
        )

    assert excinfo.value.status_code == 400


def test_catch_up_grants_owed_months(components):
    start = components.clock.now
    components.store.create(
        Account(
            account_id="7",
            plan_tier=PlanTier.PREMIUM,
            subscription_plan_id="annual",
            subscription_start=start,
            subscription_end=start + timedelta(days=360),
            last_grant_at=start,
            next_grant_due=start + timedelta(days=30),
        )
    )
    components.clock.advance(days=61)

    response = ledger_routes.catch_up_grants(current_user=USER)

    assert response.credits_granted == 50
    assert response.grants == 2
    assert response.balance == 50


def _checkout_payload(event_id="evt_1"):
    return PaymentWebhookPayload(
        id=event_id,
        type="checkout.session.completed",
        data={
            "id": "cs_1",
            "mode": "subscription",
            "customer": "cus_7",
            "subscription": "sub_7",
            "price_id": "price_monthly",
            "metadata": {"account_id": "7"},
        },
    )


def test_webhook_applies_checkout_once(components):
    components.service.open_account("7")

    first = ledger_routes.receive_payment_webhook(_checkout_payload())
    second = ledger_routes.receive_payment_webhook(_checkout_payload())

    assert first.outcome == ReconciliationOutcome.APPLIED
    assert first.credits == 25
    assert first.account_id == "7"
    assert second.outcome == ReconciliationOutcome.DUPLICATE
    assert second.received is True
    assert components.service.get_balance("7") == 25
    account = components.store.get("7")
    assert account.external_billing_ref == ExternalBillingRef(customer_id="cus_7", subscription_id="sub_7")


def test_webhook_for_unknown_customer_is_unprocessable(components):
    payload = PaymentWebhookPayload(
        id="evt_2",
        type="invoice.payment_succeeded",
        data={"id": "in_1", "customer": "cus_unknown", "subscription": "sub_unknown"},
    )

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.receive_payment_webhook(payload)

    assert excinfo.value.status_code == 422
    assert len(components.alerts.unknown_refs) == 1


@pytest.mark.parametrize("authorization", [None, "Bearer wrong", "cron-secret"])
def test_cron_endpoints_reject_bad_secret(components, authorization):
    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.run_grant_reconciliation(authorization=authorization)

    assert excinfo.value.status_code == 401


def test_cron_endpoints_reject_when_secret_unset(monkeypatch, make_components):
    built = make_components(LedgerConfig())
    monkeypatch.setattr(ledger_routes, "get_ledger_service", lambda: built.service)

    with pytest.raises(HTTPException) as excinfo:
        ledger_routes.run_free_tier_grants(authorization="Bearer ")

    assert excinfo.value.status_code == 401


def test_cron_free_tier_sweep_grants_free_accounts(components):
    components.service.open_account("7")
    components.service.open_account("8")

    response = ledger_routes.run_free_tier_grants(authorization="Bearer cron-secret")

    assert response.accounts_processed == 2
    assert response.credits_granted == 10
    assert components.service.get_balance("8") == 5


def test_cron_reconciliation_returns_summary(components):
    response = ledger_routes.run_grant_reconciliation(authorization="Bearer cron-secret")

    assert response.accounts_processed == 0
    assert response.failures == 0
