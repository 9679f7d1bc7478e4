"""Domain models for the credit ledger."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Entitlement tier of an account."""

    FREE = "free"
    PREMIUM = "premium"


class LedgerEntryKind(str, Enum):
    """Categories of credit movements."""

    INITIAL_GRANT = "initial_grant"
    RECURRING_GRANT = "recurring_grant"
    FREE_TIER_GRANT = "free_tier_grant"
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class ServiceKind(str, Enum):
    """Services a user can request for a received letter."""

    SCAN = "scan"
    DELIVERY = "delivery"


class ServiceRequestStatus(str, Enum):
    """Fulfillment status, advanced by the admin outside the ledger."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ExternalBillingRef(BaseModel):
    """Payment provider identifiers correlated with an account."""

    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def without_subscription(self) -> "ExternalBillingRef":
        return self.model_copy(update={"subscription_id": None})

    def merged_with(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> "ExternalBillingRef":
        return ExternalBillingRef(
            customer_id=customer_id or self.customer_id,
            subscription_id=subscription_id or self.subscription_id,
        )


class LedgerEntry(BaseModel):
    """Immutable signed credit movement."""

    entry_id: str = Field(default_factory=lambda: f"le_{uuid4().hex}")
    timestamp: datetime = Field(default_factory=_utcnow)
    kind: LedgerEntryKind
    amount: int
    plan_id: Optional[str] = None
    description: str = ""
    idempotency_key: Optional[str] = None
    reference: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_sign(self) -> "LedgerEntry":
        if self.amount == 0:
            raise ValueError("ledger entry amount must be non-zero")
        if self.kind == LedgerEntryKind.SPEND and self.amount > 0:
            raise ValueError("spend entries must be negative")
        if self.kind not in {LedgerEntryKind.SPEND, LedgerEntryKind.ADMIN_ADJUSTMENT} and self.amount < 0:
            raise ValueError(f"{self.kind.value} entries must be positive")
        return self


class Account(BaseModel):
    """Per-user ledger state: balance, plan and subscription window."""

    account_id: str
    plan_tier: PlanTier = PlanTier.FREE
    subscription_plan_id: Optional[str] = None
    subscription_start: Optional[datetime] = None
    subscription_end: Optional[datetime] = None
    balance: int = Field(default=0, ge=0)
    last_grant_at: Optional[datetime] = None
    next_grant_due: Optional[datetime] = None
    last_free_grant_at: Optional[datetime] = None
    external_billing_ref: ExternalBillingRef = Field(default_factory=ExternalBillingRef)
    ledger_entries: Tuple[LedgerEntry, ...] = ()
    processed_keys: FrozenSet[str] = frozenset()
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def is_premium(self) -> bool:
        return self.plan_tier == PlanTier.PREMIUM

    @property
    def entry_sum(self) -> int:
        return sum(entry.amount for entry in self.ledger_entries)

    @property
    def applied_keys(self) -> FrozenSet[str]:
        entry_keys = {entry.idempotency_key for entry in self.ledger_entries if entry.idempotency_key}
        return frozenset(entry_keys) | self.processed_keys

    def has_applied(self, idempotency_key: str) -> bool:
        return idempotency_key in self.applied_keys

    def subscription_expired(self, now: datetime) -> bool:
        return self.is_premium and self.subscription_end is not None and self.subscription_end <= now

    def downgrade_changes(self) -> Dict[str, object]:
        """Field updates that move the account to the free tier.

        Past grants are never reversed, so the balance is left untouched.
        """

        return {
            "plan_tier": PlanTier.FREE,
            "subscription_plan_id": None,
            "subscription_start": None,
            "subscription_end": None,
            "next_grant_due": None,
            "external_billing_ref": self.external_billing_ref.without_subscription(),
        }


class ServiceRequest(BaseModel):
    """A paid scan/delivery request for one letter."""

    request_id: str = Field(default_factory=lambda: f"sr_{uuid4().hex}")
    account_id: str
    letter_id: Optional[str] = None
    requested_services: FrozenSet[ServiceKind]
    delivery_address: Optional[str] = None
    cost_at_request_time: int = Field(ge=1)
    status: ServiceRequestStatus = ServiceRequestStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("requested_services")
    @classmethod
    def _require_service(cls, value: FrozenSet[ServiceKind]) -> FrozenSet[ServiceKind]:
        if not value:
            raise ValueError("at least one service must be requested")
        return value

    @model_validator(mode="after")
    def _require_address(self) -> "ServiceRequest":
        if ServiceKind.DELIVERY in self.requested_services and not (self.delivery_address or "").strip():
            raise ValueError("delivery_address is required when delivery is requested")
        return self


class PaymentEventType(str, Enum):
    """Payment provider events the reconciler reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.payment_succeeded"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class PaymentEvent(BaseModel):
    """Verified payment provider event as handed over by the webhook endpoint."""

    event_id: str
    event_type: str
    data: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def known_type(self) -> Optional[PaymentEventType]:
        try:
            return PaymentEventType(self.event_type)
        except ValueError:
            return None

    @property
    def idempotency_key(self) -> str:
        object_id = self.data.get("id")
        if object_id and self.known_type == PaymentEventType.CHECKOUT_COMPLETED:
            return f"checkout:{object_id}"
        if object_id and self.known_type == PaymentEventType.INVOICE_PAID:
            return f"invoice:{object_id}"
        return f"event:{self.event_id}"

    @property
    def metadata(self) -> Dict[str, str]:
        value = self.data.get("metadata")
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if v is not None}
        return {}

    def data_str(self, key: str) -> Optional[str]:
        value = self.data.get(key)
        if value is None or value == "":
            return None
        return str(value)


class ReconciliationOutcome(str, Enum):
    """Result of handling one payment event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class ReconciliationResult(BaseModel):
    """Summary of one reconciled payment event."""

    event_id: str
    idempotency_key: str
    outcome: ReconciliationOutcome
    account_id: Optional[str] = None
    transition: Optional[str] = None
    entries: Tuple[LedgerEntry, ...] = ()

    model_config = ConfigDict(frozen=True)


class LedgerAuditEventType(str, Enum):
    """Audit event categories emitted by the ledger."""

    ACCOUNT_CREATED = "account_created"
    CREDITS_GRANTED = "credits_granted"
    CREDITS_PURCHASED = "credits_purchased"
    CREDITS_SPENT = "credits_spent"
    CREDITS_REFUNDED = "credits_refunded"
    CREDITS_ADJUSTED = "credits_adjusted"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_ENDED = "subscription_ended"


class LedgerAuditEvent(BaseModel):
    """Structured audit event for logging and analytics."""

    event_type: LedgerAuditEventType
    account_id: str
    amount: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class BalanceAudit(BaseModel):
    """Comparison between the cached balance and the ledger entry sum."""

    account_id: str
    cached_balance: int
    computed_balance: int
    entry_count: int

    model_config = ConfigDict(frozen=True)

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.computed_balance


__all__ = [
    "Account",
    "BalanceAudit",
    "ExternalBillingRef",
    "LedgerAuditEvent",
    "LedgerAuditEventType",
    "LedgerEntry",
    "LedgerEntryKind",
    "PaymentEvent",
    "PaymentEventType",
    "PlanTier",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ServiceKind",
    "ServiceRequest",
    "ServiceRequestStatus",
]
