"""Credit debits for service requests and unconditional refunds."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from .config import LedgerConfig
from .events import LedgerEventLogger
from .exceptions import InsufficientBalance
from .models import (
    Account,
    LedgerAuditEvent,
    LedgerAuditEventType,
    LedgerEntry,
    LedgerEntryKind,
    ServiceKind,
    ServiceRequest,
)
from .retry import commit_with_retry
from .store import AccountMutation, ServiceRequestRecorder, LedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValueError("amount must be an integer number of credits")
    if amount < 1:
        raise ValueError("amount must be >= 1")
    return amount


@dataclass
class SpendEngine:
    """Applies debits against the available balance, and refunds."""

    store: LedgerStore
    config: LedgerConfig
    event_logger: LedgerEventLogger
    recorder: Optional[ServiceRequestRecorder] = None
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    sleep: Callable[[float], None] = time.sleep

    def spend(
        self,
        account_id: str,
        amount: int,
        description: str,
        *,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        """Debit ``amount`` credits, rejecting the whole spend when the balance is short."""

        _require_positive(amount)
        now = self.clock()

        def mutator(account: Account) -> AccountMutation:
            if amount > account.balance:
                raise InsufficientBalance(account.account_id, required=amount, available=account.balance)
            entry = LedgerEntry(
                timestamp=now,
                kind=LedgerEntryKind.SPEND,
                amount=-amount,
                description=description,
                reference=reference,
            )
            return AccountMutation(entries=(entry,))

        try:
            commit = commit_with_retry(
                self.store, account_id, mutator, self.config, operation="spend", sleep=self.sleep
            )
        except InsufficientBalance as exc:
            logger.info(
                "Spend rejected for insufficient balance",
                extra={"account_id": account_id, "required": exc.required, "available": exc.available},
            )
            raise

        entry = commit.entries[0]
        self.event_logger.log(
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.CREDITS_SPENT,
                account_id=account_id,
                amount=amount,
                metadata={"reference": reference or "", "balance": str(commit.account.balance)},
            )
        )
        return entry

    def refund(
        self,
        account_id: str,
        amount: int,
        description: str,
        *,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        """Credit ``amount`` back; always succeeds for an existing account."""

        _require_positive(amount)
        now = self.clock()

        def mutator(account: Account) -> AccountMutation:
            entry = LedgerEntry(
                timestamp=now,
                kind=LedgerEntryKind.REFUND,
                amount=amount,
                description=description,
                reference=reference,
            )
            return AccountMutation(entries=(entry,))

        commit = commit_with_retry(self.store, account_id, mutator, self.config, operation="refund", sleep=self.sleep)
        entry = commit.entries[0]
        self.event_logger.log(
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.CREDITS_REFUNDED,
                account_id=account_id,
                amount=amount,
                metadata={"reference": reference or ""},
            )
        )
        return entry

    def quote(self, services: Iterable[ServiceKind]) -> int:
        """Price a request from the configured per-service costs."""

        requested = set(services)
        if not requested:
            raise ValueError("at least one service must be requested")
        cost = 0
        if ServiceKind.SCAN in requested:
            cost += self.config.scan_cost
        if ServiceKind.DELIVERY in requested:
            cost += self.config.delivery_cost
        return cost

    def request_service(
        self,
        account_id: str,
        services: Iterable[ServiceKind],
        *,
        letter_id: Optional[str] = None,
        delivery_address: Optional[str] = None,
    ) -> ServiceRequest:
        """Charge for a scan/delivery request and hand it to fulfillment.

        The charge is refunded when the request cannot be persisted.
        """

        if self.recorder is None:
            raise RuntimeError("No service request recorder configured")

        requested = frozenset(services)
        request = ServiceRequest(
            account_id=account_id,
            letter_id=letter_id,
            requested_services=requested,
            delivery_address=(delivery_address or "").strip() or None,
            cost_at_request_time=self.quote(requested),
            created_at=self.clock(),
        )
        labels = " + ".join(sorted(service.value for service in requested))
        description = f"Service request {labels}" + (f" for letter {letter_id}" if letter_id else "")

        self.spend(account_id, request.cost_at_request_time, description, reference=request.request_id)
        try:
            return self.recorder.save(request)
        except Exception:
            logger.exception(
                "Failed to record service request, refunding",
                extra={"account_id": account_id, "request_id": request.request_id},
            )
            self.refund(
                account_id,
                request.cost_at_request_time,
                f"Refund for failed service request {request.request_id}",
                reference=request.request_id,
            )
            raise

    def perform_with_credits(
        self,
        account_id: str,
        cost: int,
        description: str,
        action: Callable[[], T],
    ) -> T:
        """Spend ``cost`` credits, run ``action`` and refund if it raises."""

        entry = self.spend(account_id, cost, description)
        try:
            return action()
        except Exception:
            logger.exception(
                "Credit-backed action failed, refunding",
                extra={"account_id": account_id, "entry_id": entry.entry_id, "cost": cost},
            )
            self.refund(account_id, cost, f"Refund: {description}", reference=entry.entry_id)
            raise


__all__ = ["SpendEngine"]
