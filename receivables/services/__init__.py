"""
Receivables Services Layer

- Models: data, constraints and immutability guards
- Services: ledger rules, transactions and side effects

All ledger mutations should flow through these services.
"""

from .numbering_service import NumberingService
from .invoice_service import InvoiceService
from .payment_service import PaymentService
from .credit_service import CreditService, CreditCheckResult
from .reports_service import ReportsService, CustomerAging, StatementData
from .dunning_service import DunningService, DunningRunSummary

__all__ = [
    "NumberingService",
    "InvoiceService",
    "PaymentService",
    "CreditService",
    "CreditCheckResult",
    "ReportsService",
    "CustomerAging",
    "StatementData",
    "DunningService",
    "DunningRunSummary",
]
