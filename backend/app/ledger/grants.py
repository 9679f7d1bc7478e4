"""Recurring credit grants for premium accounts and the free-tier monthly grant."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from .catalog import PlanCatalog, PlanDefinition
from .config import LedgerConfig
from .events import LedgerEventLogger
from .models import Account, LedgerAuditEvent, LedgerAuditEventType, LedgerEntry, LedgerEntryKind
from .retry import commit_with_retry
from .store import AccountMutation, LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantComputation:
    """Grants owed to one account at a point in time, not yet applied."""

    account_id: str
    entries: Tuple[LedgerEntry, ...] = ()
    downgrade: bool = False
    last_grant_at: Optional[datetime] = None
    next_grant_due: Optional[datetime] = None

    @property
    def months_owed(self) -> int:
        return len(self.entries)

    @property
    def credits(self) -> int:
        return sum(entry.amount for entry in self.entries)

    def bookkeeping_changes(self, account: Account) -> Dict[str, object]:
        """Grant bookkeeping fields that differ from the stored account."""

        changes: Dict[str, object] = {}
        if self.last_grant_at is not None and self.last_grant_at != account.last_grant_at:
            changes["last_grant_at"] = self.last_grant_at
        if self.next_grant_due is not None and self.next_grant_due != account.next_grant_due:
            changes["next_grant_due"] = self.next_grant_due
        return changes

    def to_mutation(self, account: Account) -> Optional[AccountMutation]:
        if self.downgrade:
            return AccountMutation(changes=account.downgrade_changes())
        changes = self.bookkeeping_changes(account)
        if not changes and not self.entries:
            return None
        return AccountMutation(changes=changes, entries=self.entries)


@dataclass(frozen=True)
class GrantResult:
    """What a grant run changed for one account."""

    account_id: str
    entries: Tuple[LedgerEntry, ...] = ()
    downgraded: bool = False
    balance: int = 0
    next_grant_due: Optional[datetime] = None

    @property
    def credits_granted(self) -> int:
        return sum(entry.amount for entry in self.entries)


def recurring_grant_key(account_id: str, period: datetime) -> str:
    return f"grant:{account_id}:{period.isoformat()}"


def free_tier_grant_key(account_id: str, granted_at: datetime) -> str:
    return f"free-grant:{account_id}:{granted_at.date().isoformat()}"


@dataclass
class GrantEngine:
    """Computes and applies the credit grants owed since the last grant."""

    store: LedgerStore
    catalog: PlanCatalog
    config: LedgerConfig
    event_logger: LedgerEventLogger
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    sleep: Callable[[float], None] = time.sleep

    def compute(self, account: Account, now: datetime) -> GrantComputation:
        """Return the grants owed to ``account`` at ``now`` as drafts.

        An elapsed subscription yields a downgrade and no grants. Owed periods
        are counted in whole cadences from the last grant, so each entry is
        dated deterministically and replays produce identical keys.
        """

        if not account.is_premium:
            return GrantComputation(account_id=account.account_id)

        if account.subscription_end is None or account.subscription_end <= now:
            if account.subscription_end is None:
                logger.warning(
                    "Premium account without subscription end, downgrading",
                    extra={"account_id": account.account_id},
                )
            return GrantComputation(account_id=account.account_id, downgrade=True)

        anchor = account.last_grant_at or account.subscription_start
        if anchor is None:
            logger.warning(
                "Premium account missing grant anchor, skipping grants",
                extra={"account_id": account.account_id},
            )
            return GrantComputation(account_id=account.account_id)

        plan = self.catalog.lookup(account.subscription_plan_id or "")
        cadence = self.config.cadence
        months_owed = max(0, (now - anchor) // cadence)

        entries = tuple(
            self._recurring_entry(account, plan, anchor + cadence * period)
            for period in range(1, months_owed + 1)
        )
        last_grant_at = anchor + cadence * months_owed
        next_grant_due = last_grant_at + cadence
        if account.next_grant_due is not None and account.next_grant_due > next_grant_due:
            next_grant_due = account.next_grant_due

        return GrantComputation(
            account_id=account.account_id,
            entries=entries,
            last_grant_at=last_grant_at if months_owed else account.last_grant_at,
            next_grant_due=next_grant_due,
        )

    def apply(self, account_id: str, now: Optional[datetime] = None) -> GrantResult:
        """Apply owed grants (or the expiry downgrade) in one atomic update."""

        current_time = now or self.clock()
        captured: Dict[str, GrantComputation] = {}

        def mutator(account: Account) -> Optional[AccountMutation]:
            computation = self.compute(account, current_time)
            captured["computation"] = computation
            return computation.to_mutation(account)

        commit = commit_with_retry(
            self.store,
            account_id,
            mutator,
            self.config,
            operation="grant",
            sleep=self.sleep,
        )
        computation = captured["computation"]
        committed = commit.mutation is not None
        result = GrantResult(
            account_id=account_id,
            entries=computation.entries if committed else (),
            downgraded=computation.downgrade and committed,
            balance=commit.account.balance,
            next_grant_due=commit.account.next_grant_due,
        )

        if result.downgraded:
            logger.info("Subscription expired, account downgraded", extra={"account_id": account_id})
            self.event_logger.log(
                LedgerAuditEvent(
                    event_type=LedgerAuditEventType.SUBSCRIPTION_ENDED,
                    account_id=account_id,
                    metadata={"reason": "expired"},
                )
            )
        elif result.entries:
            logger.info(
                "Recurring credits granted",
                extra={
                    "account_id": account_id,
                    "months_owed": len(result.entries),
                    "credits_granted": result.credits_granted,
                },
            )
            self.event_logger.log(
                LedgerAuditEvent(
                    event_type=LedgerAuditEventType.CREDITS_GRANTED,
                    account_id=account_id,
                    amount=result.credits_granted,
                    metadata={"months": str(len(result.entries))},
                )
            )
        return result

    def compute_free_tier(self, account: Account, now: datetime) -> Optional[LedgerEntry]:
        """Return the free-tier grant owed to a free account, if any."""

        credits = self.config.free_tier_monthly_credits
        if not self.config.free_tier_enabled or credits <= 0 or account.is_premium:
            return None
        last = account.last_free_grant_at
        if last is not None and now - last < self.config.free_tier_interval:
            return None
        return LedgerEntry(
            timestamp=now,
            kind=LedgerEntryKind.FREE_TIER_GRANT,
            amount=credits,
            description=f"Monthly credit grant: {credits} free credits",
            idempotency_key=free_tier_grant_key(account.account_id, now),
        )

    def apply_free_tier(self, account_id: str, now: Optional[datetime] = None) -> Optional[LedgerEntry]:
        current_time = now or self.clock()

        def mutator(account: Account) -> Optional[AccountMutation]:
            entry = self.compute_free_tier(account, current_time)
            if entry is None:
                return None
            return AccountMutation(changes={"last_free_grant_at": current_time}, entries=(entry,))

        commit = commit_with_retry(
            self.store,
            account_id,
            mutator,
            self.config,
            operation="free_tier_grant",
            sleep=self.sleep,
        )
        if not commit.entries:
            return None
        entry = commit.entries[0]
        self.event_logger.log(
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.CREDITS_GRANTED,
                account_id=account_id,
                amount=entry.amount,
                metadata={"tier": "free"},
            )
        )
        return entry

    def _recurring_entry(self, account: Account, plan: PlanDefinition, period: datetime) -> LedgerEntry:
        return LedgerEntry(
            timestamp=period,
            kind=LedgerEntryKind.RECURRING_GRANT,
            amount=plan.total_credits_per_month,
            plan_id=plan.plan_id,
            description=(
                f"Monthly credit grant: {plan.free_credits_per_month} free + "
                f"{plan.bonus_credits_per_month} bonus credits ({plan.display_name})"
            ),
            idempotency_key=recurring_grant_key(account.account_id, period),
        )


__all__ = [
    "GrantComputation",
    "GrantEngine",
    "GrantResult",
    "free_tier_grant_key",
    "recurring_grant_key",
]
