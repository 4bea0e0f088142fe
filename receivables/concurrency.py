"""Bounded retry for transactions that lose a race on ledger rows."""

import logging
import time
from typing import Any, Callable, TypeVar

from django.db import OperationalError, transaction

from .conf import ledger_setting
from .errors import ConcurrencyConflict, StaleInvoiceState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def is_lock_error(exc: OperationalError) -> bool:
    """True when the database refused the write because of a competing transaction."""
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    text = str(exc).lower()
    return "locked" in text or "deadlock" in text or "could not serialize" in text


def run_with_retry(operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run ``operation`` in its own transaction, retrying lost races.

    Lock errors and StaleInvoiceState are retried up to ALLOCATION_MAX_RETRIES
    times with a linear back-off, then surfaced as ConcurrencyConflict.
    Inside an outer atomic block the caller owns the transaction, so the
    first conflict is surfaced immediately.
    """
    max_retries = int(ledger_setting("ALLOCATION_MAX_RETRIES"))
    backoff = float(ledger_setting("RETRY_BACKOFF_SECONDS"))
    nested = transaction.get_connection().in_atomic_block
    name = getattr(operation, "__qualname__", repr(operation))

    attempt = 0
    while True:
        attempt += 1
        try:
            with transaction.atomic():
                return operation(*args, **kwargs)
        except StaleInvoiceState as exc:
            conflict = exc
        except OperationalError as exc:
            if not is_lock_error(exc):
                raise
            conflict = ConcurrencyConflict(str(exc), operation=name)
            conflict.__cause__ = exc

        if nested or attempt > max_retries:
            logger.warning(f"{name} gave up after {attempt} attempt(s): {conflict.message}")
            conflict.context.setdefault("attempts", attempt)
            raise conflict

        logger.info(f"{name} lost a race (attempt {attempt}/{max_retries + 1}), retrying")
        time.sleep(backoff * attempt)
