"""Shared fakes for the ledger test-suite."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from backend.app.ledger import (
    AccountNotFound,
    InMemoryLedgerStore,
    InMemoryServiceRequestRecorder,
    LedgerAuditEvent,
    LedgerAuditEventType,
    LedgerConfig,
    LedgerError,
    LedgerEventLogger,
    LedgerService,
    OperatorAlerts,
    PaymentEvent,
    UnknownExternalRef,
    build_plan_catalog,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEventLogger(LedgerEventLogger):
    def __init__(self) -> None:
        self.events: List[LedgerAuditEvent] = []

    def log(self, event: LedgerAuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: LedgerAuditEventType) -> List[LedgerAuditEvent]:
        return [event for event in self.events if event.event_type == event_type]


class FakeAlerts(OperatorAlerts):
    def __init__(self) -> None:
        self.unknown_refs: List[Tuple[PaymentEvent, UnknownExternalRef]] = []
        self.missing_accounts: List[Tuple[PaymentEvent, AccountNotFound]] = []
        self.rejected: List[Tuple[PaymentEvent, LedgerError]] = []
        self.ignored: List[Tuple[PaymentEvent, Optional[str], str]] = []

    def unknown_external_ref(self, event: PaymentEvent, error: UnknownExternalRef) -> None:
        self.unknown_refs.append((event, error))

    def account_not_found(self, event: PaymentEvent, error: AccountNotFound) -> None:
        self.missing_accounts.append((event, error))

    def rejected_event(self, event: PaymentEvent, error: LedgerError) -> None:
        self.rejected.append((event, error))

    def ignored_event(self, event: PaymentEvent, account_id: Optional[str], reason: str) -> None:
        self.ignored.append((event, account_id, reason))


@dataclass
class LedgerComponents:
    store: InMemoryLedgerStore
    recorder: InMemoryServiceRequestRecorder
    event_logger: FakeEventLogger
    alerts: FakeAlerts
    clock: FrozenClock
    config: LedgerConfig
    service: LedgerService


PRICE_PLAN_MAP = {"price_monthly": "monthly", "price_semiannual": "semiannual", "price_annual": "annual"}


def build_components(config: Optional[LedgerConfig] = None, *, store=None, recorder=None) -> LedgerComponents:
    clock = FrozenClock()
    config = config or LedgerConfig(
        conflict_backoff_seconds=0.0,
        cron_secret="cron-secret",
        price_plan_map=dict(PRICE_PLAN_MAP),
    )
    store = store if store is not None else InMemoryLedgerStore(clock=clock)
    recorder = recorder if recorder is not None else InMemoryServiceRequestRecorder()
    event_logger = FakeEventLogger()
    alerts = FakeAlerts()
    service = LedgerService(
        store,
        build_plan_catalog(config.price_plan_map),
        config,
        event_logger,
        alerts,
        recorder=recorder,
        clock=clock,
        sleep=lambda _delay: None,
    )
    return LedgerComponents(store, recorder, event_logger, alerts, clock, config, service)


@pytest.fixture
def ledger_components() -> LedgerComponents:
    return build_components()


@pytest.fixture
def make_components():
    return build_components
