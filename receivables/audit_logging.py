"""Structured JSON audit lines for ledger mutations."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from django.conf import settings

from ledgerflow.log_context import get_current_operation_id


class StructuredLogger:
    """Structured JSON logging for audit trails of financial operations."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _build_log(self, level: str, message: str, **context: Any) -> Dict:
        """Build structured log entry."""
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "message": message,
            "service": "ledgerflow",
            "environment": "production" if settings.DEBUG is False else "development",
            "operation_id": get_current_operation_id(),
            **context
        }

    def _emit(self, level: int, entry: Dict) -> None:
        # Decimals and dates are rendered as strings.
        self.logger.log(level, json.dumps(entry, default=str))

    def error(self, message: str, exception: Optional[Exception] = None, **context: Any) -> None:
        """Log error with exception details."""
        log_entry = self._build_log("ERROR", message, **context)
        if exception:
            log_entry["exception"] = {
                "type": type(exception).__name__,
                "message": str(exception),
            }
        self._emit(logging.ERROR, log_entry)

    def audit(self, action: str, user=None, company=None, resource: Optional[str] = None, **details: Any) -> None:
        """Log an audit trail entry for a ledger mutation."""
        log_entry = self._build_log("AUDIT", action,
            user_id=user.id if user else None,
            username=user.username if user else None,
            company_id=company.id if company else None,
            resource=resource,
            **details
        )
        self._emit(logging.INFO, log_entry)


audit_logger = StructuredLogger("receivables.audit")
