"""API routes exposing the credit ledger."""
from __future__ import annotations

import hmac
import logging
import os
from typing import Any, List, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, status

from backend import app_context

from ..ledger import LedgerEntryKind, LedgerError, LedgerService, PaymentEvent
from ..schemas.ledger import (
    AdjustmentRequest,
    BalanceAuditResponse,
    BalanceResponse,
    CatchUpResponse,
    EntryResponse,
    HistoryResponse,
    LedgerEntryResponse,
    PaymentWebhookPayload,
    PaymentWebhookResponse,
    RefundRequest,
    ServiceRequestCreate,
    ServiceRequestResponse,
    SpendRequest,
    SweepResponse,
)
from ..services.ledger import get_ledger_service

logger = logging.getLogger(__name__)

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
_DEFAULT_HISTORY_SIZE = 50
_MAX_HISTORY_SIZE = 200


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _require_admin(current_user: Any) -> None:
    if not app_context.is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


def _require_cron_secret(service: LedgerService, authorization: Optional[str]) -> None:
    secret = service.config.cron_secret
    if not secret:
        logger.warning("Cron endpoint called but CRON_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _account_id(current_user: Any) -> str:
    return str(current_user.id)


router = APIRouter(tags=["credits"])


@router.get("/api/credits/balance", response_model=BalanceResponse)
def get_balance(*, current_user=Depends(_get_current_user)) -> BalanceResponse:
    """Return the caller's balance and subscription state."""

    service = get_ledger_service()
    account = service.open_account(_account_id(current_user))
    return BalanceResponse.from_account(account)


@router.get("/api/credits/history", response_model=HistoryResponse)
def get_history(
    *,
    limit: int = Query(default=_DEFAULT_HISTORY_SIZE, ge=1, le=_MAX_HISTORY_SIZE),
    kind: Optional[List[LedgerEntryKind]] = Query(default=None),
    current_user=Depends(_get_current_user),
) -> HistoryResponse:
    service = get_ledger_service()
    account_id = _account_id(current_user)
    service.open_account(account_id)
    entries = service.get_history(account_id, limit=limit, kinds=kind)
    return HistoryResponse(entries=[LedgerEntryResponse.from_entry(entry) for entry in entries])


@router.post("/api/credits/spend", response_model=EntryResponse)
def spend_credits(
    payload: SpendRequest,
    *,
    current_user=Depends(_get_current_user),
) -> EntryResponse:
    service = get_ledger_service()
    account_id = _account_id(current_user)
    service.open_account(account_id)
    try:
        entry = service.spend(account_id, payload.amount, payload.description, reference=payload.reference)
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return EntryResponse(entry=LedgerEntryResponse.from_entry(entry), balance=service.get_balance(account_id))


@router.post("/api/credits/refund", response_model=EntryResponse)
def refund_credits(
    payload: RefundRequest,
    *,
    current_user=Depends(_get_current_user),
) -> EntryResponse:
    """Credit back a failed action. Restricted to admins."""

    _require_admin(current_user)
    service = get_ledger_service()
    account_id = payload.account_id or _account_id(current_user)
    try:
        entry = service.refund(account_id, payload.amount, payload.description, reference=payload.reference)
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return EntryResponse(entry=LedgerEntryResponse.from_entry(entry), balance=service.get_balance(account_id))


@router.post("/api/credits/catch-up", response_model=CatchUpResponse)
def catch_up_grants(*, current_user=Depends(_get_current_user)) -> CatchUpResponse:
    """Apply grants owed since the last visit; called right after login."""

    service = get_ledger_service()
    account_id = _account_id(current_user)
    service.open_account(account_id)
    try:
        result = service.catch_up(account_id)
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    return CatchUpResponse(
        credits_granted=result.credits_granted,
        grants=len(result.entries),
        downgraded=result.downgraded,
        balance=result.balance,
        next_grant_due=result.next_grant_due,
    )


@router.post(
    "/api/service-requests",
    response_model=ServiceRequestResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_service_request(
    payload: ServiceRequestCreate,
    *,
    current_user=Depends(_get_current_user),
) -> ServiceRequestResponse:
    service = get_ledger_service()
    account_id = _account_id(current_user)
    service.open_account(account_id)
    try:
        request = service.request_service(
            account_id,
            payload.services,
            letter_id=payload.letter_id,
            delivery_address=payload.delivery_address,
        )
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return ServiceRequestResponse.from_request(request, balance=service.get_balance(account_id))


@router.post("/api/admin/credits/adjust", response_model=EntryResponse)
def adjust_credits(
    payload: AdjustmentRequest,
    *,
    current_user=Depends(_get_current_user),
) -> EntryResponse:
    _require_admin(current_user)
    service = get_ledger_service()
    try:
        entry = service.adjust(
            payload.account_id,
            payload.amount,
            payload.reason,
            actor_id=_account_id(current_user),
        )
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return EntryResponse(entry=LedgerEntryResponse.from_entry(entry), balance=service.get_balance(payload.account_id))


@router.get("/api/admin/credits/{account_id}/audit", response_model=BalanceAuditResponse)
def audit_account(account_id: str, *, current_user=Depends(_get_current_user)) -> BalanceAuditResponse:
    _require_admin(current_user)
    service = get_ledger_service()
    try:
        audit = service.audit(account_id)
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    return BalanceAuditResponse.from_audit(audit)


@router.post("/api/payments/webhook", response_model=PaymentWebhookResponse)
def receive_payment_webhook(payload: PaymentWebhookPayload) -> PaymentWebhookResponse:
    """Reconcile a payment event whose signature was verified upstream."""

    service = get_ledger_service()
    event_kwargs = {"event_id": payload.id, "event_type": payload.type, "data": payload.data}
    if payload.received_at is not None:
        event_kwargs["received_at"] = payload.received_at
    event = PaymentEvent(**event_kwargs)
    try:
        result = service.handle_payment_event(event)
    except LedgerError as exc:
        raise exc.to_http_exception() from exc
    return PaymentWebhookResponse.from_result(result)


@router.post("/api/cron/reconcile-grants", response_model=SweepResponse)
def run_grant_reconciliation(authorization: Optional[str] = Header(default=None)) -> SweepResponse:
    service = get_ledger_service()
    _require_cron_secret(service, authorization)
    summary = service.reconcile_due_grants()
    return SweepResponse.from_summary(summary)


@router.post("/api/cron/free-tier-grants", response_model=SweepResponse)
def run_free_tier_grants(authorization: Optional[str] = Header(default=None)) -> SweepResponse:
    service = get_ledger_service()
    _require_cron_secret(service, authorization)
    summary = service.grant_free_tier()
    return SweepResponse.from_summary(summary)


__all__ = ["router"]
