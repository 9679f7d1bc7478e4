"""Facade coordinating the ledger engines for the API and scheduled sweeps."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from .catalog import PlanCatalog
from .config import LedgerConfig
from .events import LedgerEventLogger, OperatorAlerts
from .exceptions import AccountNotFound, InsufficientBalance
from .grants import GrantEngine, GrantResult
from .models import (
    Account,
    BalanceAudit,
    LedgerAuditEvent,
    LedgerAuditEventType,
    LedgerEntry,
    LedgerEntryKind,
    PaymentEvent,
    ReconciliationResult,
    ServiceKind,
    ServiceRequest,
)
from .reconciler import WebhookReconciler
from .retry import commit_with_retry
from .spend import SpendEngine
from .store import AccountMutation, LedgerStore, ServiceRequestRecorder

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SweepSummary:
    """Counters describing one grant sweep."""

    accounts_processed: int = 0
    grants_applied: int = 0
    credits_granted: int = 0
    downgraded: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return {
            "accounts_processed": self.accounts_processed,
            "grants_applied": self.grants_applied,
            "credits_granted": self.credits_granted,
            "downgraded": self.downgraded,
            "failures": self.failures,
        }


class LedgerService:
    """Coordinates balance reads, spends, grants, admin adjustments and webhooks."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: PlanCatalog,
        config: LedgerConfig,
        event_logger: LedgerEventLogger,
        alerts: OperatorAlerts,
        *,
        recorder: Optional[ServiceRequestRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._config = config
        self._event_logger = event_logger
        self._recorder = recorder
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._grants = GrantEngine(store, catalog, config, event_logger, clock=self._clock, sleep=sleep)
        self._spends = SpendEngine(store, config, event_logger, recorder, clock=self._clock, sleep=sleep)
        self._reconciler = WebhookReconciler(
            store,
            catalog,
            config,
            self._grants,
            event_logger,
            alerts,
            clock=self._clock,
            sleep=sleep,
            account_opener=self.open_account,
        )

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def grants(self) -> GrantEngine:
        return self._grants

    @property
    def spends(self) -> SpendEngine:
        return self._spends

    @property
    def reconciler(self) -> WebhookReconciler:
        return self._reconciler

    # Accounts -----------------------------------------------------------

    def open_account(self, account_id: str) -> Account:
        """Create the free-tier account for a newly registered user (idempotent)."""

        if not account_id:
            raise ValueError("account_id must be provided")
        existing = self._store.get(account_id)
        if existing is not None:
            return existing
        now = self._clock()
        account = self._store.create(Account(account_id=account_id, created_at=now, updated_at=now))
        if account.created_at == now and account.version == 0:
            self._event_logger.log(
                LedgerAuditEvent(event_type=LedgerAuditEventType.ACCOUNT_CREATED, account_id=account_id)
            )
        return account

    def get_account(self, account_id: str) -> Account:
        account = self._store.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def get_balance(self, account_id: str) -> int:
        return self.get_account(account_id).balance

    def get_history(
        self,
        account_id: str,
        *,
        limit: int = 50,
        kinds: Optional[Iterable[LedgerEntryKind]] = None,
    ) -> List[LedgerEntry]:
        """Return ledger entries newest first."""

        if limit < 1:
            raise ValueError("limit must be >= 1")
        allowed = set(kinds) if kinds else None
        entries = [
            entry
            for entry in reversed(self.get_account(account_id).ledger_entries)
            if allowed is None or entry.kind in allowed
        ]
        return entries[:limit]

    # Spending -----------------------------------------------------------

    def spend(self, account_id: str, amount: int, description: str, *, reference: Optional[str] = None) -> LedgerEntry:
        return self._spends.spend(account_id, amount, description, reference=reference)

    def refund(self, account_id: str, amount: int, description: str, *, reference: Optional[str] = None) -> LedgerEntry:
        return self._spends.refund(account_id, amount, description, reference=reference)

    def request_service(
        self,
        account_id: str,
        services: Iterable[ServiceKind],
        *,
        letter_id: Optional[str] = None,
        delivery_address: Optional[str] = None,
    ) -> ServiceRequest:
        return self._spends.request_service(
            account_id, services, letter_id=letter_id, delivery_address=delivery_address
        )

    def perform_with_credits(self, account_id: str, cost: int, description: str, action: Callable[[], T]) -> T:
        return self._spends.perform_with_credits(account_id, cost, description, action)

    def list_service_requests(self, account_id: str, *, limit: int = 20) -> Sequence[ServiceRequest]:
        if self._recorder is None:
            return []
        return self._recorder.list_for_account(account_id, limit=limit)

    # Admin --------------------------------------------------------------

    def adjust(
        self,
        account_id: str,
        amount: int,
        reason: str,
        *,
        actor_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Apply a signed admin correction; negative adjustments may not overdraw."""

        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValueError("amount must be a non-zero integer")
        reason = (reason or "").strip()
        if not reason:
            raise ValueError("reason must be provided")
        now = self._clock()

        def mutator(account: Account) -> AccountMutation:
            if account.balance + amount < 0:
                raise InsufficientBalance(account.account_id, required=-amount, available=account.balance)
            entry = LedgerEntry(
                timestamp=now,
                kind=LedgerEntryKind.ADMIN_ADJUSTMENT,
                amount=amount,
                description=f"Admin adjustment: {reason}",
                reference=actor_id,
            )
            return AccountMutation(entries=(entry,))

        commit = commit_with_retry(
            self._store, account_id, mutator, self._config, operation="admin_adjustment", sleep=self._sleep
        )
        entry = commit.entries[0]
        logger.info(
            "Admin credit adjustment applied",
            extra={"account_id": account_id, "amount": amount, "actor_id": actor_id, "balance": commit.account.balance},
        )
        self._event_logger.log(
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.CREDITS_ADJUSTED,
                account_id=account_id,
                amount=amount,
                metadata={"reason": reason, "actor_id": actor_id or ""},
            )
        )
        return entry

    def audit(self, account_id: str) -> BalanceAudit:
        """Compare the cached balance with the sum of ledger entries."""

        account = self.get_account(account_id)
        report = BalanceAudit(
            account_id=account_id,
            cached_balance=account.balance,
            computed_balance=account.entry_sum,
            entry_count=len(account.ledger_entries),
        )
        if not report.consistent:
            logger.error(
                "Ledger balance mismatch",
                extra={
                    "account_id": account_id,
                    "cached_balance": report.cached_balance,
                    "computed_balance": report.computed_balance,
                },
            )
        return report

    # Grants -------------------------------------------------------------

    def catch_up(self, account_id: str, now: Optional[datetime] = None) -> GrantResult:
        """Apply owed grants at login time, the same way the sweep does."""

        return self._grants.apply(account_id, now)

    def reconcile_due_grants(self, now: Optional[datetime] = None) -> SweepSummary:
        """Grant owed credits and downgrade expired accounts across the store.

        A failure for one account is logged and counted; the sweep moves on.
        """

        current_time = now or self._clock()
        summary = SweepSummary()
        for account_id in self._store.list_due_premium(current_time):
            summary.accounts_processed += 1
            try:
                result = self._grants.apply(account_id, current_time)
            except Exception:
                summary.failures += 1
                logger.exception("Grant sweep failed for account", extra={"account_id": account_id})
                continue
            if result.downgraded:
                summary.downgraded += 1
            if result.entries:
                summary.grants_applied += len(result.entries)
                summary.credits_granted += result.credits_granted
        logger.info("Grant sweep finished", extra=summary.as_dict())
        return summary

    def grant_free_tier(self, now: Optional[datetime] = None) -> SweepSummary:
        """Give the monthly free-tier credits to every free account that is due."""

        summary = SweepSummary()
        if not self._config.free_tier_enabled:
            logger.info("Free-tier grants disabled, skipping sweep")
            return summary
        current_time = now or self._clock()
        cutoff = current_time - self._config.free_tier_interval
        for account_id in self._store.list_free_tier_due(cutoff):
            summary.accounts_processed += 1
            try:
                entry = self._grants.apply_free_tier(account_id, current_time)
            except Exception:
                summary.failures += 1
                logger.exception("Free-tier grant failed for account", extra={"account_id": account_id})
                continue
            if entry is not None:
                summary.grants_applied += 1
                summary.credits_granted += entry.amount
        logger.info("Free-tier grant sweep finished", extra=summary.as_dict())
        return summary

    # Payments -----------------------------------------------------------

    def handle_payment_event(self, event: PaymentEvent) -> ReconciliationResult:
        return self._reconciler.handle(event)


__all__ = ["LedgerService", "SweepSummary"]
