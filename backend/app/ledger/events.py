"""Collaborator protocols for audit logging and operator alerts."""
from __future__ import annotations

from typing import Optional, Protocol

from .exceptions import AccountNotFound, LedgerError, UnknownExternalRef
from .models import LedgerAuditEvent, PaymentEvent


class LedgerEventLogger(Protocol):
    """Captures structured ledger audit events."""

    def log(self, event: LedgerAuditEvent) -> None:
        ...


class OperatorAlerts(Protocol):
    """Surfaces payment events that need manual reconciliation."""

    def unknown_external_ref(self, event: PaymentEvent, error: UnknownExternalRef) -> None:
        ...

    def account_not_found(self, event: PaymentEvent, error: AccountNotFound) -> None:
        ...

    def rejected_event(self, event: PaymentEvent, error: LedgerError) -> None:
        ...

    def ignored_event(self, event: PaymentEvent, account_id: Optional[str], reason: str) -> None:
        ...


__all__ = ["LedgerEventLogger", "OperatorAlerts"]
