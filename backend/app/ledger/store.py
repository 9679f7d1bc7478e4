"""Ledger store abstractions and the in-memory implementation."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .exceptions import AccountNotFound, Conflict, DuplicateEvent, InsufficientBalance
from .models import Account, LedgerEntry, PlanTier, ServiceRequest


@dataclass(frozen=True)
class AccountMutation:
    """Changes computed by a mutator, committed as one unit by the store."""

    changes: Mapping[str, object] = field(default_factory=dict)
    entries: Tuple[LedgerEntry, ...] = ()
    processed_key: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.changes and not self.entries and self.processed_key is None

    @property
    def amount(self) -> int:
        return sum(entry.amount for entry in self.entries)

    def new_keys(self) -> List[str]:
        keys = [entry.idempotency_key for entry in self.entries if entry.idempotency_key]
        if self.processed_key:
            keys.append(self.processed_key)
        return keys

    def apply_to(self, account: Account, now: datetime) -> Account:
        """Return the committed state, enforcing key uniqueness and a non-negative balance."""

        seen = set(account.applied_keys)
        for key in self.new_keys():
            if key in seen:
                raise DuplicateEvent(key)
            seen.add(key)

        balance = account.balance + self.amount
        if balance < 0:
            raise InsufficientBalance(account.account_id, required=-self.amount, available=account.balance)

        processed_keys = account.processed_keys
        if self.processed_key:
            processed_keys = processed_keys | {self.processed_key}

        return account.model_copy(
            update={
                **dict(self.changes),
                "balance": balance,
                "ledger_entries": account.ledger_entries + tuple(self.entries),
                "processed_keys": processed_keys,
                "version": account.version + 1,
                "updated_at": now,
            }
        )


@dataclass(frozen=True)
class LedgerCommit:
    """Outcome of a transactional update."""

    account: Account
    mutation: Optional[AccountMutation] = None

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return self.mutation.entries if self.mutation else ()


Mutator = Callable[[Account], Optional[AccountMutation]]


class LedgerStore(Protocol):
    """Persistence operations required by the ledger engines."""

    def create(self, account: Account) -> Account:
        ...

    def get(self, account_id: str) -> Optional[Account]:
        ...

    def transactionally_update(self, account_id: str, mutator: Mutator) -> LedgerCommit:
        """Read, mutate and commit one account atomically.

        Raises :class:`Conflict` when a concurrent write won the race; the
        caller retries the whole operation.
        """

    def find_by_external_ref(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Optional[Account]:
        ...

    def list_due_premium(self, now: datetime) -> Sequence[str]:
        ...

    def list_free_tier_due(self, cutoff: datetime) -> Sequence[str]:
        ...


class ServiceRequestRecorder(Protocol):
    """Persists service requests handed to the fulfillment admin."""

    def save(self, request: ServiceRequest) -> ServiceRequest:
        ...

    def list_for_account(self, account_id: str, *, limit: int = 20) -> Sequence[ServiceRequest]:
        ...


class InMemoryLedgerStore:
    """Optimistically versioned store suitable for tests and local development."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._accounts: Dict[str, Account] = {}
        self._lock = Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create(self, account: Account) -> Account:
        with self._lock:
            existing = self._accounts.get(account.account_id)
            if existing is not None:
                return existing
            self._accounts[account.account_id] = account
            return account

    def get(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return self._accounts.get(account_id)

    def transactionally_update(self, account_id: str, mutator: Mutator) -> LedgerCommit:
        snapshot = self.get(account_id)
        if snapshot is None:
            raise AccountNotFound(account_id)

        mutation = mutator(snapshot)
        if mutation is None or mutation.is_empty:
            return LedgerCommit(account=snapshot)

        with self._lock:
            latest = self._accounts.get(account_id)
            if latest is None:
                raise AccountNotFound(account_id)
            if latest.version != snapshot.version:
                raise Conflict(account_id)
            updated = mutation.apply_to(latest, self._clock())
            self._accounts[account_id] = updated
        return LedgerCommit(account=updated, mutation=mutation)

    def find_by_external_ref(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Optional[Account]:
        with self._lock:
            accounts = list(self._accounts.values())
        if subscription_id:
            for account in accounts:
                if account.external_billing_ref.subscription_id == subscription_id:
                    return account
        if customer_id:
            for account in accounts:
                if account.external_billing_ref.customer_id == customer_id:
                    return account
        return None

    def list_due_premium(self, now: datetime) -> Sequence[str]:
        with self._lock:
            accounts = list(self._accounts.values())
        due: List[str] = []
        for account in accounts:
            if account.plan_tier != PlanTier.PREMIUM:
                continue
            if account.subscription_expired(now) or account.next_grant_due is None or account.next_grant_due <= now:
                due.append(account.account_id)
        return sorted(due)

    def list_free_tier_due(self, cutoff: datetime) -> Sequence[str]:
        with self._lock:
            accounts = list(self._accounts.values())
        return sorted(
            account.account_id
            for account in accounts
            if account.plan_tier == PlanTier.FREE
            and (account.last_free_grant_at is None or account.last_free_grant_at <= cutoff)
        )

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()


class InMemoryServiceRequestRecorder:
    """Keeps service requests in a list for tests and local development."""

    def __init__(self) -> None:
        self._requests: List[ServiceRequest] = []
        self._lock = Lock()

    def save(self, request: ServiceRequest) -> ServiceRequest:
        with self._lock:
            self._requests.append(request)
        return request

    def list_for_account(self, account_id: str, *, limit: int = 20) -> Sequence[ServiceRequest]:
        with self._lock:
            matching = [request for request in self._requests if request.account_id == account_id]
        matching.sort(key=lambda request: request.created_at, reverse=True)
        return matching[:limit]


__all__ = [
    "AccountMutation",
    "InMemoryLedgerStore",
    "InMemoryServiceRequestRecorder",
    "LedgerCommit",
    "LedgerStore",
    "Mutator",
    "ServiceRequestRecorder",
]
