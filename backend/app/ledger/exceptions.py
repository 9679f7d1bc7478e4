"""Error taxonomy for the credit ledger."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class LedgerError(Exception):
    """Base class for ledger failures surfaced to callers."""

    code = "ledger_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return {"error": self.code, "message": self.message, **self.detail}

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class AccountNotFound(LedgerError):
    code = "account_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}", detail={"account_id": account_id})
        self.account_id = account_id


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, account_id: str, *, required: int, available: int) -> None:
        super().__init__(
            "Insufficient credits. Please purchase more credits or upgrade your plan.",
            detail={"account_id": account_id, "required": required, "available": available},
        )
        self.account_id = account_id
        self.required = required
        self.available = available


class InvalidPlan(LedgerError):
    code = "invalid_plan"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Unknown plan or price identifier: {identifier}", detail={"plan": identifier})
        self.identifier = identifier


class InvalidPackage(LedgerError):
    code = "invalid_package"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, amount_cents: int, credits: Optional[int] = None) -> None:
        super().__init__(
            f"No credit package matches amount={amount_cents} credits={credits}",
            detail={"amount_cents": amount_cents, "credits": credits},
        )
        self.amount_cents = amount_cents
        self.credits = credits


class DuplicateEvent(LedgerError):
    """Raised when an idempotency key was already applied; callers treat it as success."""

    code = "duplicate_event"
    status_code = status.HTTP_200_OK

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"Event already applied: {idempotency_key}", detail={"idempotency_key": idempotency_key})
        self.idempotency_key = idempotency_key


class Conflict(LedgerError):
    """Concurrent write detected; the whole operation must be retried."""

    code = "conflict"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, account_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Concurrent update for account {account_id}", detail={"account_id": account_id})
        self.account_id = account_id


class UnknownExternalRef(LedgerError):
    code = "unknown_external_ref"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"No account linked to customer={customer_id} subscription={subscription_id}",
            detail={"customer_id": customer_id, "subscription_id": subscription_id},
        )
        self.customer_id = customer_id
        self.subscription_id = subscription_id


__all__ = [
    "AccountNotFound",
    "Conflict",
    "DuplicateEvent",
    "InsufficientBalance",
    "InvalidPackage",
    "InvalidPlan",
    "LedgerError",
    "UnknownExternalRef",
]
