"""Credit ledger package: balances, grants, spends and payment reconciliation."""

from .catalog import CREDIT_PACKAGES, PLAN_DEFINITIONS, CreditPackage, PlanCatalog, PlanDefinition, build_plan_catalog
from .config import LedgerConfig, load_ledger_config
from .events import LedgerEventLogger, OperatorAlerts
from .exceptions import (
    AccountNotFound,
    Conflict,
    DuplicateEvent,
    InsufficientBalance,
    InvalidPackage,
    InvalidPlan,
    LedgerError,
    UnknownExternalRef,
)
from .grants import GrantComputation, GrantEngine, GrantResult
from .models import (
    Account,
    BalanceAudit,
    ExternalBillingRef,
    LedgerAuditEvent,
    LedgerAuditEventType,
    LedgerEntry,
    LedgerEntryKind,
    PaymentEvent,
    PaymentEventType,
    PlanTier,
    ReconciliationOutcome,
    ReconciliationResult,
    ServiceKind,
    ServiceRequest,
    ServiceRequestStatus,
)
from .reconciler import WebhookReconciler
from .retry import commit_with_retry, retry_on_conflict
from .service import LedgerService, SweepSummary
from .spend import SpendEngine
from .store import (
    AccountMutation,
    InMemoryLedgerStore,
    InMemoryServiceRequestRecorder,
    LedgerCommit,
    LedgerStore,
    ServiceRequestRecorder,
)

__all__ = [
    "Account",
    "AccountMutation",
    "AccountNotFound",
    "BalanceAudit",
    "CREDIT_PACKAGES",
    "Conflict",
    "CreditPackage",
    "DuplicateEvent",
    "ExternalBillingRef",
    "GrantComputation",
    "GrantEngine",
    "GrantResult",
    "InMemoryLedgerStore",
    "InMemoryServiceRequestRecorder",
    "InsufficientBalance",
    "InvalidPackage",
    "InvalidPlan",
    "LedgerAuditEvent",
    "LedgerAuditEventType",
    "LedgerCommit",
    "LedgerConfig",
    "LedgerEntry",
    "LedgerEntryKind",
    "LedgerError",
    "LedgerEventLogger",
    "LedgerService",
    "LedgerStore",
    "OperatorAlerts",
    "PLAN_DEFINITIONS",
    "PaymentEvent",
    "PaymentEventType",
    "PlanCatalog",
    "PlanDefinition",
    "PlanTier",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ServiceKind",
    "ServiceRequest",
    "ServiceRequestRecorder",
    "ServiceRequestStatus",
    "SpendEngine",
    "SweepSummary",
    "UnknownExternalRef",
    "WebhookReconciler",
    "build_plan_catalog",
    "commit_with_retry",
    "load_ledger_config",
    "retry_on_conflict",
]
