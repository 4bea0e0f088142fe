"""
Aging and statement reporting.

Both reports are derived from invoices, payments and allocations only, so
they can be regenerated for any past date.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from ..errors import ValidationError
from ..models import Company, CustomerPayment, CustomerStatement, Invoice, NumberingSeries, PaymentAllocation
from ..money import ZERO, format_amount, quantize_amount
from .invoice_service import InvoiceService
from .numbering_service import NumberingService

logger = logging.getLogger(__name__)

AGING_BUCKETS = ("current", "days_30", "days_60", "days_90", "over_90")


def aging_bucket(days_overdue: int) -> str:
    if days_overdue <= 0:
        return "current"
    elif days_overdue <= 30:
        return "days_30"
    elif days_overdue <= 60:
        return "days_60"
    elif days_overdue <= 90:
        return "days_90"
    return "over_90"


@dataclass
class AgingLine:
    invoice_id: int
    invoice_number: str
    invoice_date: date
    due_date: date
    days_overdue: int
    outstanding: Decimal
    bucket: str


@dataclass
class CustomerAging:
    customer_id: int
    customer_name: str
    current: Decimal = ZERO
    days_30: Decimal = ZERO
    days_60: Decimal = ZERO
    days_90: Decimal = ZERO
    over_90: Decimal = ZERO
    invoices: List[AgingLine] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.current + self.days_30 + self.days_60 + self.days_90 + self.over_90

    def add(self, line: AgingLine) -> None:
        setattr(self, line.bucket, getattr(self, line.bucket) + line.outstanding)
        self.invoices.append(line)


@dataclass
class StatementLine:
    date: date
    kind: str
    reference: str
    description: str
    debit: Decimal
    credit: Decimal
    balance: Decimal

    def as_json(self) -> Dict[str, str]:
        return {
            "date": self.date.isoformat(),
            "kind": self.kind,
            "reference": self.reference,
            "description": self.description,
            "debit": format_amount(self.debit),
            "credit": format_amount(self.credit),
            "balance": format_amount(self.balance),
        }


@dataclass
class StatementData:
    customer_id: int
    customer_name: str
    from_date: date
    to_date: date
    opening_balance: Decimal
    closing_balance: Decimal
    total_invoices: Decimal
    total_payments: Decimal
    lines: List[StatementLine] = field(default_factory=list)
    statement_id: Optional[int] = None
    statement_number: Optional[str] = None


class ReportsService:
    @staticmethod
    def aging_report(company: Company, customer_id: Optional[int] = None,
                     as_of: Optional[date] = None) -> List[CustomerAging]:
        """
        Bucket each customer's open balances by days past due as of a date.

        An invoice's outstanding amount is recomputed from the allocations
        dated on or before ``as_of``, so later payments do not leak into a
        past report. The buckets of each customer always sum to its total.

        Args:
            company: Tenant to report on.
            customer_id: Restrict the report to one customer.
            as_of: Report date, today by default.

        Returns:
            One CustomerAging per customer with a positive balance, ordered by name.
        """
        as_of = as_of or timezone.localdate()

        invoices = (
            Invoice.objects
            .filter(company=company, invoice_date__lte=as_of)
            .exclude(status__in=[Invoice.Status.DRAFT, Invoice.Status.CANCELLED])
            .select_related('customer')
            .order_by('customer__name', 'customer_id', 'due_date', 'id')
        )
        if customer_id is not None:
            InvoiceService.get_customer(company, customer_id)
            invoices = invoices.filter(customer_id=customer_id)

        applied = {
            row['invoice_id']: row['total'] or ZERO
            for row in (
                PaymentAllocation.objects
                .filter(company=company, invoice__in=invoices, allocation_date__date__lte=as_of)
                .values('invoice_id')
                .annotate(total=Sum('amount'))
            )
        }

        report: Dict[int, CustomerAging] = {}
        for invoice in invoices:
            outstanding = quantize_amount(invoice.total_amount - applied.get(invoice.pk, ZERO))
            if outstanding <= 0:
                continue
            days_overdue = (as_of - invoice.due_date).days
            line = AgingLine(
                invoice_id=invoice.pk,
                invoice_number=invoice.invoice_number,
                invoice_date=invoice.invoice_date,
                due_date=invoice.due_date,
                days_overdue=max(0, days_overdue),
                outstanding=outstanding,
                bucket=aging_bucket(days_overdue),
            )
            if invoice.customer_id not in report:
                report[invoice.customer_id] = CustomerAging(
                    customer_id=invoice.customer_id,
                    customer_name=invoice.customer.name,
                )
            report[invoice.customer_id].add(line)

        return list(report.values())

    @classmethod
    def customer_statement(cls, company: Company, user, customer_id: int, from_date: date, to_date: date,
                           persist: bool = True) -> StatementData:
        """Build a period statement with running balances, optionally stored as a snapshot."""
        if not isinstance(from_date, date) or not isinstance(to_date, date):
            raise ValidationError(errors={'from_date': 'Statement period requires two dates'})
        if from_date > to_date:
            raise ValidationError(errors={'to_date': 'End of period cannot be before its start'})

        customer = InvoiceService.get_customer(company, customer_id)

        invoices = (
            Invoice.objects
            .filter(company=company, customer=customer)
            .exclude(status__in=[Invoice.Status.DRAFT, Invoice.Status.CANCELLED])
        )
        payments = CustomerPayment.objects.filter(
            company=company, customer=customer, status=CustomerPayment.Status.COMPLETED,
        )

        invoiced_before = invoices.filter(invoice_date__lt=from_date).aggregate(total=Sum('total_amount'))['total']
        paid_before = payments.filter(payment_date__lt=from_date).aggregate(total=Sum('amount'))['total']
        opening = quantize_amount((invoiced_before or ZERO) - (paid_before or ZERO))

        events = []
        for invoice in invoices.filter(invoice_date__gte=from_date, invoice_date__lte=to_date):
            events.append((invoice.invoice_date, 0, invoice.pk, "invoice", invoice.invoice_number,
                           f"Invoice due {invoice.due_date.isoformat()}", invoice.total_amount, ZERO))
        for payment in payments.filter(payment_date__gte=from_date, payment_date__lte=to_date):
            events.append((payment.payment_date, 1, payment.pk, "payment", payment.payment_number,
                           f"Payment ({payment.get_payment_method_display()})", ZERO, payment.amount))
        # Invoices before payments on the same day.
        events.sort(key=lambda event: event[:3])

        balance = opening
        total_invoices = ZERO
        total_payments = ZERO
        lines = []
        for event_date, _, _, kind, reference, description, debit, credit in events:
            balance += debit - credit
            total_invoices += debit
            total_payments += credit
            lines.append(StatementLine(event_date, kind, reference, description, debit, credit, balance))

        statement = StatementData(
            customer_id=customer.pk,
            customer_name=customer.name,
            from_date=from_date,
            to_date=to_date,
            opening_balance=opening,
            closing_balance=opening + total_invoices - total_payments,
            total_invoices=total_invoices,
            total_payments=total_payments,
            lines=lines,
        )

        if persist:
            cls._persist_statement(company, user, customer, statement)
        return statement

    @staticmethod
    @transaction.atomic
    def _persist_statement(company: Company, user, customer, statement: StatementData) -> CustomerStatement:
        snapshot = CustomerStatement.objects.create(
            company=company,
            customer=customer,
            statement_number=NumberingService.next_number_for(company, NumberingSeries.DocumentType.STATEMENT),
            statement_date=timezone.localdate(),
            from_date=statement.from_date,
            to_date=statement.to_date,
            opening_balance=statement.opening_balance,
            closing_balance=statement.closing_balance,
            total_invoices=statement.total_invoices,
            total_payments=statement.total_payments,
            lines=[line.as_json() for line in statement.lines],
            created_by=user,
        )
        statement.statement_id = snapshot.pk
        statement.statement_number = snapshot.statement_number
        logger.info(f"Statement {snapshot.statement_number} stored for customer {customer.pk}")
        return snapshot
