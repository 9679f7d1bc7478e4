"""Translate payment provider events into ledger state transitions."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from .catalog import PlanCatalog, PlanDefinition
from .config import LedgerConfig
from .events import LedgerEventLogger, OperatorAlerts
from .exceptions import AccountNotFound, DuplicateEvent, InvalidPackage, InvalidPlan, UnknownExternalRef
from .grants import GrantEngine
from .models import (
    Account,
    LedgerAuditEvent,
    LedgerAuditEventType,
    LedgerEntry,
    LedgerEntryKind,
    PaymentEvent,
    PaymentEventType,
    PlanTier,
    ReconciliationOutcome,
    ReconciliationResult,
)
from .retry import commit_with_retry
from .store import AccountMutation, LedgerStore

logger = logging.getLogger(__name__)

_ACCOUNT_METADATA_KEYS = ("account_id", "user_id", "userId")
_DOWNGRADE_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})


@dataclass(frozen=True)
class _Transition:
    """A mutation plus the audit trail it should produce once committed."""

    name: str
    mutation: Optional[AccountMutation]
    audit_type: Optional[LedgerAuditEventType] = None
    audit_amount: Optional[int] = None
    audit_metadata: Tuple[Tuple[str, str], ...] = ()


class _Ignored(Exception):
    """Internal signal: the event does not change the account."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class WebhookReconciler:
    """Idempotent state machine over verified payment provider events."""

    store: LedgerStore
    catalog: PlanCatalog
    config: LedgerConfig
    grant_engine: GrantEngine
    event_logger: LedgerEventLogger
    alerts: OperatorAlerts
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))
    sleep: Callable[[float], None] = time.sleep
    account_opener: Optional[Callable[[str], Account]] = None

    def handle(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply ``event`` once; replays return ``duplicate`` without side effects.

        Unknown event types are acknowledged and ignored. Unknown plans,
        packages and external references propagate after being reported.
        """

        event_type = event.known_type
        key = event.idempotency_key
        if event_type is None:
            logger.debug("Ignoring unsupported payment event", extra={"event_id": event.event_id, "event_type": event.event_type})
            return self._result(event, ReconciliationOutcome.IGNORED)

        account = self.resolve_account_for_external_ref(event)
        now = self.clock()
        captured: Dict[str, _Transition] = {}

        def mutator(current: Account) -> Optional[AccountMutation]:
            if current.has_applied(key):
                raise DuplicateEvent(key)
            transition = self._transition(event_type, event, current, key, now)
            captured["transition"] = transition
            return transition.mutation

        try:
            commit = commit_with_retry(
                self.store,
                account.account_id,
                mutator,
                self.config,
                operation=f"webhook:{event_type.value}",
                sleep=self.sleep,
            )
        except DuplicateEvent:
            logger.info(
                "Payment event already applied",
                extra={"event_id": event.event_id, "idempotency_key": key, "account_id": account.account_id},
            )
            return self._result(event, ReconciliationOutcome.DUPLICATE, account_id=account.account_id)
        except _Ignored as ignored:
            logger.info(
                "Payment event ignored",
                extra={"event_id": event.event_id, "account_id": account.account_id, "reason": ignored.reason},
            )
            return self._result(
                event, ReconciliationOutcome.IGNORED, account_id=account.account_id, transition=ignored.reason
            )
        except (InvalidPlan, InvalidPackage) as exc:
            logger.error(
                "Payment event rejected",
                extra={"event_id": event.event_id, "account_id": account.account_id, "error": exc.code},
            )
            self.alerts.rejected_event(event, exc)
            raise

        transition = captured["transition"]
        if transition.name == "invoice_not_premium":
            self.alerts.ignored_event(event, account.account_id, "invoice for non-premium account")
        if transition.audit_type is not None:
            self.event_logger.log(
                LedgerAuditEvent(
                    event_type=transition.audit_type,
                    account_id=account.account_id,
                    amount=transition.audit_amount,
                    metadata={"event_id": event.event_id, **dict(transition.audit_metadata)},
                )
            )
        logger.info(
            "Payment event applied",
            extra={
                "event_id": event.event_id,
                "event_type": event_type.value,
                "account_id": account.account_id,
                "transition": transition.name,
                "balance": commit.account.balance,
            },
        )
        return self._result(
            event,
            ReconciliationOutcome.APPLIED,
            account_id=account.account_id,
            transition=transition.name,
            entries=commit.entries,
        )

    def resolve_account_for_external_ref(self, event: PaymentEvent) -> Account:
        """Find the account an event belongs to.

        Metadata account ids win, then the provider customer id, then the
        subscription id. The reference is cached on the account when the
        event is applied.
        A checkout naming a registered user without a ledger account opens
        one when an ``account_opener`` is configured.
        """

        customer_id, subscription_id = self._external_ids(event)
        account_id = self._metadata_account_id(event)
        if account_id:
            account = self.store.get(account_id)
            if account is None and self._opens_accounts(event):
                logger.info(
                    "Opening ledger account for checkout",
                    extra={"event_id": event.event_id, "account_id": account_id},
                )
                return self.account_opener(account_id)
            if account is None:
                error = AccountNotFound(account_id)
                logger.error(
                    "Payment event references missing account",
                    extra={"event_id": event.event_id, "event_type": event.event_type, "account_id": account_id},
                )
                self.alerts.account_not_found(event, error)
                raise error
            return account

        account = None
        if customer_id:
            account = self.store.find_by_external_ref(customer_id=customer_id)
        if account is None and subscription_id:
            account = self.store.find_by_external_ref(subscription_id=subscription_id)
        if account is None:
            error = UnknownExternalRef(customer_id=customer_id, subscription_id=subscription_id)
            logger.error(
                "Payment event could not be matched to an account",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "customer_id": customer_id,
                    "subscription_id": subscription_id,
                },
            )
            self.alerts.unknown_external_ref(event, error)
            raise error
        return account

    def _opens_accounts(self, event: PaymentEvent) -> bool:
        return self.account_opener is not None and event.known_type == PaymentEventType.CHECKOUT_COMPLETED

    def _transition(
        self,
        event_type: PaymentEventType,
        event: PaymentEvent,
        account: Account,
        key: str,
        now: datetime,
    ) -> _Transition:
        if event_type == PaymentEventType.CHECKOUT_COMPLETED:
            if event.data_str("mode") == "payment":
                return self._package_purchase(event, account, key, now)
            return self._subscription_checkout(event, account, key, now)
        if event_type == PaymentEventType.INVOICE_PAID:
            return self._renewal(event, account, key, now)
        return self._subscription_change(event_type, event, account, key, now)

    def _subscription_checkout(self, event: PaymentEvent, account: Account, key: str, now: datetime) -> _Transition:
        plan = self._required_plan(event)
        return self._activation(
            event,
            account,
            plan,
            now,
            entry_key=key,
            name="subscription_activated",
            description=(
                f"{plan.display_name} activated: {plan.free_credits_per_month} free + "
                f"{plan.bonus_credits_per_month} bonus credits"
            ),
        )

    def _activation(
        self,
        event: PaymentEvent,
        account: Account,
        plan: PlanDefinition,
        now: datetime,
        *,
        entry_key: str,
        name: str,
        description: str,
        processed_key: Optional[str] = None,
    ) -> _Transition:
        """Open a fresh subscription window with its first monthly grant."""

        customer_id, subscription_id = self._external_ids(event)
        cadence = self.config.cadence
        next_grant_due = now + cadence
        if account.next_grant_due is not None and account.next_grant_due > next_grant_due:
            next_grant_due = account.next_grant_due

        entry = LedgerEntry(
            timestamp=now,
            kind=LedgerEntryKind.INITIAL_GRANT,
            amount=plan.total_credits_per_month,
            plan_id=plan.plan_id,
            description=description,
            idempotency_key=entry_key,
            reference=event.data_str("id"),
        )
        changes = {
            "plan_tier": PlanTier.PREMIUM,
            "subscription_plan_id": plan.plan_id,
            "subscription_start": now,
            "subscription_end": now + cadence * plan.duration_months,
            "last_grant_at": now,
            "next_grant_due": next_grant_due,
            "external_billing_ref": account.external_billing_ref.merged_with(
                customer_id=customer_id, subscription_id=subscription_id
            ),
        }
        return _Transition(
            name=name,
            mutation=AccountMutation(changes=changes, entries=(entry,), processed_key=processed_key),
            audit_type=LedgerAuditEventType.SUBSCRIPTION_ACTIVATED,
            audit_amount=entry.amount,
            audit_metadata=(("plan_id", plan.plan_id), ("transition", name)),
        )

    def _reactivation(
        self,
        event: PaymentEvent,
        account: Account,
        plan: PlanDefinition,
        key: str,
        now: datetime,
        *,
        processed_key: Optional[str] = None,
    ) -> _Transition:
        # A paid renewal can land after the sweep already expired the window.
        return self._activation(
            event,
            account,
            plan,
            now,
            entry_key=key,
            name="subscription_reactivated",
            description=(
                f"{plan.display_name} reactivated: {plan.free_credits_per_month} free + "
                f"{plan.bonus_credits_per_month} bonus credits"
            ),
            processed_key=processed_key,
        )

    def _package_purchase(self, event: PaymentEvent, account: Account, key: str, now: datetime) -> _Transition:
        if event.data_str("payment_status") == "unpaid":
            raise _Ignored("payment_unpaid")

        amount_cents = self._int_field(event.data.get("amount_total"))
        if amount_cents is None:
            raise InvalidPackage(0)
        credits = self._int_field(event.metadata.get("credits"))
        package = self.catalog.match_package(amount_cents, credits)

        customer_id, _ = self._external_ids(event)
        changes: Dict[str, object] = {}
        if customer_id and account.external_billing_ref.customer_id != customer_id:
            changes["external_billing_ref"] = account.external_billing_ref.merged_with(customer_id=customer_id)

        entry = LedgerEntry(
            timestamp=now,
            kind=LedgerEntryKind.PURCHASE,
            amount=package.credits,
            description=f"Purchased {package.credits} credits",
            idempotency_key=key,
            reference=event.data_str("id"),
        )
        return _Transition(
            name="credits_purchased",
            mutation=AccountMutation(changes=changes, entries=(entry,)),
            audit_type=LedgerAuditEventType.CREDITS_PURCHASED,
            audit_amount=package.credits,
            audit_metadata=(("amount_cents", str(package.price_cents)),),
        )

    def _renewal(self, event: PaymentEvent, account: Account, key: str, now: datetime) -> _Transition:
        if event.data_str("billing_reason") == "subscription_create":
            return _Transition(name="invoice_recorded", mutation=AccountMutation(processed_key=key))
        if not account.is_premium:
            plan = self._plan_for_event(event, required=False)
            if plan is None:
                return _Transition(name="invoice_not_premium", mutation=AccountMutation(processed_key=key))
            return self._reactivation(event, account, plan, key, now)

        plan = self._plan_for_event(event, required=False)
        if plan is None:
            plan = self.catalog.lookup(account.subscription_plan_id or "")

        current_end = account.subscription_end
        base = current_end if current_end is not None and current_end > now else now
        new_end = base + self.config.cadence * plan.duration_months

        customer_id, subscription_id = self._external_ids(event)
        changes: Dict[str, object] = {
            "subscription_end": new_end,
            "subscription_plan_id": plan.plan_id,
            "external_billing_ref": account.external_billing_ref.merged_with(
                customer_id=customer_id, subscription_id=subscription_id
            ),
        }
        if account.subscription_start is None:
            changes["subscription_start"] = now

        extended = account.model_copy(update=changes)
        computation = self.grant_engine.compute(extended, now)
        changes.update(computation.bookkeeping_changes(extended))

        return _Transition(
            name="subscription_renewed",
            mutation=AccountMutation(changes=changes, entries=computation.entries, processed_key=key),
            audit_type=LedgerAuditEventType.SUBSCRIPTION_RENEWED,
            audit_amount=computation.credits or None,
            audit_metadata=(("plan_id", plan.plan_id), ("subscription_end", new_end.isoformat())),
        )

    def _subscription_change(
        self,
        event_type: PaymentEventType,
        event: PaymentEvent,
        account: Account,
        key: str,
        now: datetime,
    ) -> _Transition:
        _, subscription_id = self._external_ids(event)
        stored = account.external_billing_ref.subscription_id
        if subscription_id and stored and subscription_id != stored:
            raise _Ignored("stale_subscription")

        status_value = event.data_str("status") or ""
        ending = event_type == PaymentEventType.SUBSCRIPTION_DELETED or status_value in _DOWNGRADE_STATUSES
        if ending:
            if not account.is_premium:
                return _Transition(name="already_free", mutation=AccountMutation(processed_key=key))
            return _Transition(
                name="subscription_ended",
                mutation=AccountMutation(changes=account.downgrade_changes(), processed_key=key),
                audit_type=LedgerAuditEventType.SUBSCRIPTION_ENDED,
                audit_metadata=(("status", status_value or "deleted"),),
            )

        plan = self._plan_for_event(event, required=False)
        if status_value == "active" and not account.is_premium and plan is not None:
            # The invoice that paid for this window is recorded as already applied.
            latest_invoice = event.data_str("latest_invoice")
            invoice_key = f"invoice:{latest_invoice}" if latest_invoice else None
            if invoice_key and account.has_applied(invoice_key):
                invoice_key = None
            return self._reactivation(event, account, plan, key, now, processed_key=invoice_key)
        if status_value == "active" and account.is_premium and plan is not None:
            if plan.plan_id == account.subscription_plan_id:
                raise _Ignored("plan_unchanged")
            return _Transition(
                name="plan_changed",
                mutation=AccountMutation(changes={"subscription_plan_id": plan.plan_id}, processed_key=key),
                audit_type=LedgerAuditEventType.SUBSCRIPTION_CHANGED,
                audit_metadata=(
                    ("from_plan", account.subscription_plan_id or ""),
                    ("to_plan", plan.plan_id),
                ),
            )
        raise _Ignored(f"status_{status_value or 'unknown'}")

    def _plan_for_event(self, event: PaymentEvent, *, required: bool) -> Optional[PlanDefinition]:
        metadata = event.metadata
        price_id = event.data_str("price_id") or metadata.get("price_id")
        if price_id:
            return self.catalog.lookup_price(price_id)
        plan_id = metadata.get("plan_id")
        if plan_id:
            return self.catalog.lookup(plan_id)
        if required:
            raise InvalidPlan("<missing>")
        return None

    def _required_plan(self, event: PaymentEvent) -> PlanDefinition:
        plan = self._plan_for_event(event, required=True)
        if plan is None:
            raise InvalidPlan("<missing>")
        return plan

    def _external_ids(self, event: PaymentEvent) -> Tuple[Optional[str], Optional[str]]:
        customer_id = event.data_str("customer")
        if event.known_type in {PaymentEventType.SUBSCRIPTION_UPDATED, PaymentEventType.SUBSCRIPTION_DELETED}:
            subscription_id = event.data_str("id")
        else:
            subscription_id = event.data_str("subscription")
        return customer_id, subscription_id

    @staticmethod
    def _metadata_account_id(event: PaymentEvent) -> Optional[str]:
        metadata = event.metadata
        for key in _ACCOUNT_METADATA_KEYS:
            value = metadata.get(key)
            if value:
                return value
        return event.data_str("client_reference_id")

    @staticmethod
    def _int_field(value: object) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(str(value))
        except ValueError:
            return None

    @staticmethod
    def _result(
        event: PaymentEvent,
        outcome: ReconciliationOutcome,
        *,
        account_id: Optional[str] = None,
        transition: Optional[str] = None,
        entries: Tuple[LedgerEntry, ...] = (),
    ) -> ReconciliationResult:
        return ReconciliationResult(
            event_id=event.event_id,
            idempotency_key=event.idempotency_key,
            outcome=outcome,
            account_id=account_id,
            transition=transition,
            entries=entries,
        )


__all__ = ["WebhookReconciler"]
