"""Bounded retry of ledger operations that lost a concurrent write."""
from __future__ import annotations

import logging
import time
from typing import Callable, Mapping, Optional, TypeVar

from .config import LedgerConfig
from .exceptions import Conflict
from .store import LedgerCommit, LedgerStore, Mutator

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(
    operation: Callable[[], T],
    *,
    attempts: int = 5,
    backoff_seconds: float = 0.05,
    max_backoff_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    context: Optional[Mapping[str, object]] = None,
) -> T:
    """Run ``operation`` again from scratch each time it raises :class:`Conflict`.

    The delay doubles after every attempt and is capped at
    ``max_backoff_seconds``. The last :class:`Conflict` propagates once the
    attempts are exhausted.
    """

    attempts = max(1, attempts)
    log_context = dict(context or {})
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Conflict:
            if attempt >= attempts:
                logger.error(
                    "Ledger update still conflicting after retries",
                    extra={**log_context, "ledger_attempt": attempt, "ledger_attempts": attempts},
                )
                raise
            delay = min(max_backoff_seconds, backoff_seconds * (2 ** (attempt - 1)))
            logger.info(
                "Ledger update conflicted, retrying",
                extra={**log_context, "ledger_attempt": attempt, "ledger_retry_delay": delay},
            )
            if delay > 0:
                sleep(delay)
    raise RuntimeError("unreachable")  # pragma: no cover


def commit_with_retry(
    store: LedgerStore,
    account_id: str,
    mutator: Mutator,
    config: LedgerConfig,
    *,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
) -> LedgerCommit:
    """Apply ``mutator`` transactionally, re-reading the account after each conflict."""

    return retry_on_conflict(
        lambda: store.transactionally_update(account_id, mutator),
        attempts=config.conflict_max_attempts,
        backoff_seconds=config.conflict_backoff_seconds,
        max_backoff_seconds=config.conflict_max_backoff_seconds,
        sleep=sleep,
        context={"account_id": account_id, "ledger_operation": operation},
    )


__all__ = ["commit_with_retry", "retry_on_conflict"]
