"""API schemas for credit ledger endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..ledger import (
    Account,
    BalanceAudit,
    LedgerEntry,
    LedgerEntryKind,
    PlanTier,
    ReconciliationOutcome,
    ReconciliationResult,
    ServiceKind,
    ServiceRequest,
    ServiceRequestStatus,
    SweepSummary,
)


class BalanceResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    balance: int
    plan_tier: PlanTier = Field(alias="planTier")
    subscription_plan_id: Optional[str] = Field(alias="subscriptionPlanId", default=None)
    subscription_end: Optional[datetime] = Field(alias="subscriptionEnd", default=None)
    next_grant_due: Optional[datetime] = Field(alias="nextGrantDue", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_account(cls, account: Account) -> "BalanceResponse":
        return cls(
            account_id=account.account_id,
            balance=account.balance,
            plan_tier=account.plan_tier,
            subscription_plan_id=account.subscription_plan_id,
            subscription_end=account.subscription_end,
            next_grant_due=account.next_grant_due,
        )


class LedgerEntryResponse(BaseModel):
    entry_id: str = Field(alias="entryId")
    timestamp: datetime
    kind: LedgerEntryKind
    amount: int
    plan_id: Optional[str] = Field(alias="planId", default=None)
    description: str = ""
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            entry_id=entry.entry_id,
            timestamp=entry.timestamp,
            kind=entry.kind,
            amount=entry.amount,
            plan_id=entry.plan_id,
            description=entry.description,
            reference=entry.reference,
        )


class HistoryResponse(BaseModel):
    entries: List[LedgerEntryResponse]

    model_config = ConfigDict(populate_by_name=True)


class SpendRequest(BaseModel):
    amount: int = Field(ge=1)
    description: str = Field(min_length=1, max_length=255)
    reference: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RefundRequest(SpendRequest):
    account_id: Optional[str] = Field(alias="accountId", default=None)


class EntryResponse(BaseModel):
    entry: LedgerEntryResponse
    balance: int

    model_config = ConfigDict(populate_by_name=True)


class CatchUpResponse(BaseModel):
    credits_granted: int = Field(alias="creditsGranted")
    grants: int
    downgraded: bool
    balance: int
    next_grant_due: Optional[datetime] = Field(alias="nextGrantDue", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ServiceRequestCreate(BaseModel):
    services: List[ServiceKind] = Field(min_length=1)
    letter_id: Optional[str] = Field(alias="letterId", default=None)
    delivery_address: Optional[str] = Field(alias="deliveryAddress", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ServiceRequestResponse(BaseModel):
    request_id: str = Field(alias="requestId")
    letter_id: Optional[str] = Field(alias="letterId", default=None)
    services: List[ServiceKind]
    cost: int
    status: ServiceRequestStatus
    created_at: datetime = Field(alias="createdAt")
    balance: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_request(cls, request: ServiceRequest, *, balance: Optional[int] = None) -> "ServiceRequestResponse":
        return cls(
            request_id=request.request_id,
            letter_id=request.letter_id,
            services=sorted(request.requested_services, key=lambda service: service.value),
            cost=request.cost_at_request_time,
            status=request.status,
            created_at=request.created_at,
            balance=balance,
        )


class AdjustmentRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    amount: int
    reason: str = Field(min_length=1, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class BalanceAuditResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    cached_balance: int = Field(alias="cachedBalance")
    computed_balance: int = Field(alias="computedBalance")
    entry_count: int = Field(alias="entryCount")
    consistent: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_audit(cls, audit: BalanceAudit) -> "BalanceAuditResponse":
        return cls(
            account_id=audit.account_id,
            cached_balance=audit.cached_balance,
            computed_balance=audit.computed_balance,
            entry_count=audit.entry_count,
            consistent=audit.consistent,
        )


class PaymentWebhookPayload(BaseModel):
    id: str
    type: str
    data: Dict[str, object] = Field(default_factory=dict)
    received_at: Optional[datetime] = Field(alias="receivedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PaymentWebhookResponse(BaseModel):
    received: bool = True
    outcome: ReconciliationOutcome
    account_id: Optional[str] = Field(alias="accountId", default=None)
    transition: Optional[str] = None
    credits: int = 0

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "PaymentWebhookResponse":
        return cls(
            outcome=result.outcome,
            account_id=result.account_id,
            transition=result.transition,
            credits=sum(entry.amount for entry in result.entries),
        )


class SweepResponse(BaseModel):
    accounts_processed: int = Field(alias="accountsProcessed")
    grants_applied: int = Field(alias="grantsApplied")
    credits_granted: int = Field(alias="creditsGranted")
    downgraded: int
    failures: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: SweepSummary) -> "SweepResponse":
        return cls(**summary.as_dict())


__all__ = [
    "AdjustmentRequest",
    "BalanceAuditResponse",
    "BalanceResponse",
    "CatchUpResponse",
    "EntryResponse",
    "HistoryResponse",
    "LedgerEntryResponse",
    "PaymentWebhookPayload",
    "PaymentWebhookResponse",
    "RefundRequest",
    "ServiceRequestCreate",
    "ServiceRequestResponse",
    "SpendRequest",
    "SweepResponse",
]
