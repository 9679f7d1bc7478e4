"""Application wiring for the credit ledger service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..ledger import (
    AccountNotFound,
    LedgerAuditEvent,
    LedgerError,
    LedgerEventLogger,
    LedgerService,
    OperatorAlerts,
    PaymentEvent,
    UnknownExternalRef,
    build_plan_catalog,
    load_ledger_config,
)
from ..ledger.repository import PostgresLedgerStore, PostgresServiceRequestRecorder


logger = logging.getLogger("ledger")


class LoggingOperatorAlerts(OperatorAlerts):
    """Alert sink that records reconciliation problems to the application logger."""

    def unknown_external_ref(self, event: PaymentEvent, error: UnknownExternalRef) -> None:
        logger.warning(
            "Unmatched payment event %s type=%s customer=%s subscription=%s",
            event.event_id,
            event.event_type,
            error.customer_id,
            error.subscription_id,
        )

    def account_not_found(self, event: PaymentEvent, error: AccountNotFound) -> None:
        logger.warning(
            "Payment event %s type=%s references missing account %s",
            event.event_id,
            event.event_type,
            error.account_id,
        )

    def rejected_event(self, event: PaymentEvent, error: LedgerError) -> None:
        logger.warning(
            "Payment event %s type=%s rejected: %s",
            event.event_id,
            event.event_type,
            error.message,
        )

    def ignored_event(self, event: PaymentEvent, account_id: Optional[str], reason: str) -> None:
        logger.warning(
            "Payment event %s type=%s ignored for account=%s: %s",
            event.event_id,
            event.event_type,
            account_id,
            reason,
        )


class LoggingLedgerEventLogger(LedgerEventLogger):
    """Simple event logger forwarding ledger audit events to logging."""

    def log(self, event: LedgerAuditEvent) -> None:
        logger.info(
            "Ledger event %s account=%s amount=%s metadata=%s",
            event.event_type.value,
            event.account_id,
            event.amount,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_ledger_service() -> LedgerService:
    config = load_ledger_config()
    catalog = build_plan_catalog(config.price_plan_map)
    service = LedgerService(
        store=PostgresLedgerStore(),
        catalog=catalog,
        config=config,
        event_logger=LoggingLedgerEventLogger(),
        alerts=LoggingOperatorAlerts(),
        recorder=PostgresServiceRequestRecorder(),
    )
    return service


__all__ = ["get_ledger_service", "LoggingLedgerEventLogger", "LoggingOperatorAlerts"]
