"""PostgreSQL persistence for ledger accounts, entries and service requests."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2 import errors as pg_errors
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from backend.app_context import get_conn

from .exceptions import AccountNotFound, Conflict, DuplicateEvent
from .models import (
    Account,
    ExternalBillingRef,
    LedgerEntry,
    LedgerEntryKind,
    PlanTier,
    ServiceKind,
    ServiceRequest,
    ServiceRequestStatus,
)
from .store import LedgerCommit, Mutator

logger = logging.getLogger(__name__)

LEDGER_SAVEPOINT = "ledger_update"

LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_accounts (
    account_id TEXT PRIMARY KEY,
    plan_tier TEXT NOT NULL DEFAULT 'free',
    subscription_plan_id TEXT,
    subscription_start TIMESTAMPTZ,
    subscription_end TIMESTAMPTZ,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
    last_grant_at TIMESTAMPTZ,
    next_grant_due TIMESTAMPTZ,
    last_free_grant_at TIMESTAMPTZ,
    customer_id TEXT,
    subscription_id TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ledger_accounts_customer_idx ON ledger_accounts (customer_id);
CREATE INDEX IF NOT EXISTS ledger_accounts_subscription_idx ON ledger_accounts (subscription_id);
CREATE INDEX IF NOT EXISTS ledger_accounts_next_grant_idx ON ledger_accounts (plan_tier, next_grant_due);

CREATE TABLE IF NOT EXISTS ledger_entries (
    seq BIGSERIAL PRIMARY KEY,
    entry_id TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES ledger_accounts (account_id),
    occurred_at TIMESTAMPTZ NOT NULL,
    kind TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount <> 0),
    plan_id TEXT,
    description TEXT NOT NULL DEFAULT '',
    idempotency_key TEXT UNIQUE,
    reference TEXT
);
CREATE INDEX IF NOT EXISTS ledger_entries_account_idx ON ledger_entries (account_id, seq);

CREATE TABLE IF NOT EXISTS ledger_processed_events (
    idempotency_key TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES ledger_accounts (account_id),
    processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS ledger_service_requests (
    request_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES ledger_accounts (account_id),
    letter_id TEXT,
    requested_services TEXT[] NOT NULL,
    delivery_address TEXT,
    cost_at_request_time INTEGER NOT NULL CHECK (cost_at_request_time > 0),
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS ledger_service_requests_account_idx
    ON ledger_service_requests (account_id, created_at DESC);
"""

_RETRYABLE_ERRORS = (pg_errors.SerializationFailure, pg_errors.DeadlockDetected, pg_errors.LockNotAvailable)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def ensure_schema(conn: Optional[PgConnection] = None) -> None:
    """Create the ledger tables when missing."""

    with managed_connection(conn) as (connection, _managed):
        with connection.cursor() as cursor:
            cursor.execute(LEDGER_SCHEMA)


def _row_to_entry(row: dict) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        timestamp=row["occurred_at"],
        kind=LedgerEntryKind(row["kind"]),
        amount=int(row["amount"]),
        plan_id=row.get("plan_id"),
        description=row.get("description") or "",
        idempotency_key=row.get("idempotency_key"),
        reference=row.get("reference"),
    )


def _row_to_account(row: dict, entries: Iterable[LedgerEntry], processed_keys: Iterable[str]) -> Account:
    return Account(
        account_id=row["account_id"],
        plan_tier=PlanTier(row["plan_tier"]),
        subscription_plan_id=row.get("subscription_plan_id"),
        subscription_start=row.get("subscription_start"),
        subscription_end=row.get("subscription_end"),
        balance=int(row["balance"]),
        last_grant_at=row.get("last_grant_at"),
        next_grant_due=row.get("next_grant_due"),
        last_free_grant_at=row.get("last_free_grant_at"),
        external_billing_ref=ExternalBillingRef(
            customer_id=row.get("customer_id"),
            subscription_id=row.get("subscription_id"),
        ),
        ledger_entries=tuple(entries),
        processed_keys=frozenset(processed_keys),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_service_request(row: dict) -> ServiceRequest:
    return ServiceRequest(
        request_id=row["request_id"],
        account_id=row["account_id"],
        letter_id=row.get("letter_id"),
        requested_services=frozenset(ServiceKind(value) for value in row["requested_services"]),
        delivery_address=row.get("delivery_address"),
        cost_at_request_time=int(row["cost_at_request_time"]),
        status=ServiceRequestStatus(row["status"]),
        created_at=row["created_at"],
    )


class PostgresLedgerStore:
    """Ledger store backed by PostgreSQL row locks."""

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._conn = conn
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @contextmanager
    def _cursor(self, *, atomic: bool = False) -> Iterable[PgCursor]:
        """Yield a dict cursor.

        With an injected connection the caller owns the transaction, so
        ``atomic`` writes run inside a savepoint that is rolled back on error
        and leaves the caller's earlier statements untouched.
        """

        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            savepoint = atomic and not managed
            try:
                if savepoint:
                    cursor.execute(f"SAVEPOINT {LEDGER_SAVEPOINT}")
                yield cursor
                if savepoint:
                    cursor.execute(f"RELEASE SAVEPOINT {LEDGER_SAVEPOINT}")
                if managed:
                    connection.commit()
            except Exception:
                if savepoint:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT {LEDGER_SAVEPOINT}")
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def _load(self, cursor: PgCursor, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        lock_clause = " FOR UPDATE" if for_update else ""
        cursor.execute(
            f"SELECT * FROM ledger_accounts WHERE account_id = %s{lock_clause}",
            (account_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        cursor.execute(
            """
            SELECT entry_id, occurred_at, kind, amount, plan_id, description, idempotency_key, reference
            FROM ledger_entries
            WHERE account_id = %s
            ORDER BY seq
            """,
            (account_id,),
        )
        entries = [_row_to_entry(entry_row) for entry_row in cursor.fetchall()]
        cursor.execute(
            "SELECT idempotency_key FROM ledger_processed_events WHERE account_id = %s",
            (account_id,),
        )
        keys = [key_row["idempotency_key"] for key_row in cursor.fetchall()]
        return _row_to_account(row, entries, keys)

    def create(self, account: Account) -> Account:
        with self._cursor(atomic=True) as cursor:
            cursor.execute(
                """
                INSERT INTO ledger_accounts (account_id, plan_tier, balance, version, created_at, updated_at)
                VALUES (%s, %s, 0, 0, %s, %s)
                ON CONFLICT (account_id) DO NOTHING
                """,
                (account.account_id, account.plan_tier.value, account.created_at, account.updated_at),
            )
            created = self._load(cursor, account.account_id)
        if created is None:
            raise RuntimeError("Failed to persist ledger account")
        return created

    def get(self, account_id: str) -> Optional[Account]:
        with self._cursor() as cursor:
            return self._load(cursor, account_id)

    def transactionally_update(self, account_id: str, mutator: Mutator) -> LedgerCommit:
        try:
            with self._cursor(atomic=True) as cursor:
                current = self._load(cursor, account_id, for_update=True)
                if current is None:
                    raise AccountNotFound(account_id)
                mutation = mutator(current)
                if mutation is None or mutation.is_empty:
                    return LedgerCommit(account=current)
                updated = mutation.apply_to(current, self._clock())
                self._write(cursor, current, updated, mutation.entries, mutation.processed_key)
        except _RETRYABLE_ERRORS as exc:
            logger.info("Ledger row lock contention", extra={"account_id": account_id, "pgcode": exc.pgcode})
            raise Conflict(account_id) from exc
        except pg_errors.UniqueViolation as exc:
            key = getattr(getattr(exc, "diag", None), "message_detail", None) or account_id
            raise DuplicateEvent(str(key)) from exc
        return LedgerCommit(account=updated, mutation=mutation)

    def _write(
        self,
        cursor: PgCursor,
        current: Account,
        updated: Account,
        entries: Sequence[LedgerEntry],
        processed_key: Optional[str],
    ) -> None:
        cursor.execute(
            """
            UPDATE ledger_accounts SET
                plan_tier = %(plan_tier)s,
                subscription_plan_id = %(subscription_plan_id)s,
                subscription_start = %(subscription_start)s,
                subscription_end = %(subscription_end)s,
                balance = %(balance)s,
                last_grant_at = %(last_grant_at)s,
                next_grant_due = %(next_grant_due)s,
                last_free_grant_at = %(last_free_grant_at)s,
                customer_id = %(customer_id)s,
                subscription_id = %(subscription_id)s,
                version = %(version)s,
                updated_at = %(updated_at)s
            WHERE account_id = %(account_id)s AND version = %(expected_version)s
            """,
            {
                "account_id": updated.account_id,
                "plan_tier": updated.plan_tier.value,
                "subscription_plan_id": updated.subscription_plan_id,
                "subscription_start": updated.subscription_start,
                "subscription_end": updated.subscription_end,
                "balance": updated.balance,
                "last_grant_at": updated.last_grant_at,
                "next_grant_due": updated.next_grant_due,
                "last_free_grant_at": updated.last_free_grant_at,
                "customer_id": updated.external_billing_ref.customer_id,
                "subscription_id": updated.external_billing_ref.subscription_id,
                "version": updated.version,
                "updated_at": updated.updated_at,
                "expected_version": current.version,
            },
        )
        if cursor.rowcount != 1:
            raise Conflict(current.account_id)

        for entry in entries:
            cursor.execute(
                """
                INSERT INTO ledger_entries (
                    entry_id, account_id, occurred_at, kind, amount, plan_id,
                    description, idempotency_key, reference
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.entry_id,
                    updated.account_id,
                    entry.timestamp,
                    entry.kind.value,
                    entry.amount,
                    entry.plan_id,
                    entry.description,
                    entry.idempotency_key,
                    entry.reference,
                ),
            )
        if processed_key:
            cursor.execute(
                "INSERT INTO ledger_processed_events (idempotency_key, account_id) VALUES (%s, %s)",
                (processed_key, updated.account_id),
            )

    def find_by_external_ref(
        self,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Optional[Account]:
        with self._cursor() as cursor:
            for column, value in (("subscription_id", subscription_id), ("customer_id", customer_id)):
                if not value:
                    continue
                cursor.execute(
                    f"SELECT account_id FROM ledger_accounts WHERE {column} = %s ORDER BY created_at LIMIT 1",
                    (value,),
                )
                row = cursor.fetchone()
                if row:
                    return self._load(cursor, row["account_id"])
        return None

    def list_due_premium(self, now: datetime) -> Sequence[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT account_id
                FROM ledger_accounts
                WHERE plan_tier = 'premium'
                  AND (
                    subscription_end IS NULL
                    OR subscription_end <= %(now)s
                    OR next_grant_due IS NULL
                    OR next_grant_due <= %(now)s
                  )
                ORDER BY account_id
                """,
                {"now": now},
            )
            return [row["account_id"] for row in cursor.fetchall()]

    def list_free_tier_due(self, cutoff: datetime) -> Sequence[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT account_id
                FROM ledger_accounts
                WHERE plan_tier = 'free'
                  AND (last_free_grant_at IS NULL OR last_free_grant_at <= %s)
                ORDER BY account_id
                """,
                (cutoff,),
            )
            return [row["account_id"] for row in cursor.fetchall()]


class PostgresServiceRequestRecorder:
    """Writes service requests to the fulfillment queue table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def save(self, request: ServiceRequest) -> ServiceRequest:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    INSERT INTO ledger_service_requests (
                        request_id, account_id, letter_id, requested_services,
                        delivery_address, cost_at_request_time, status, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        request.request_id,
                        request.account_id,
                        request.letter_id,
                        sorted(service.value for service in request.requested_services),
                        request.delivery_address,
                        request.cost_at_request_time,
                        request.status.value,
                        request.created_at,
                    ),
                )
                row = cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist service request")
        return _row_to_service_request(row)

    def list_for_account(self, account_id: str, *, limit: int = 20) -> Sequence[ServiceRequest]:
        with managed_connection(self._conn) as (connection, _managed):
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(
                    """
                    SELECT *
                    FROM ledger_service_requests
                    WHERE account_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (account_id, limit),
                )
                rows = cursor.fetchall()
        return [_row_to_service_request(row) for row in rows]


__all__ = [
    "LEDGER_SCHEMA",
    "PostgresLedgerStore",
    "PostgresServiceRequestRecorder",
    "ensure_schema",
    "managed_connection",
]
