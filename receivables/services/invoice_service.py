import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from ..conf import ledger_setting
from ..errors import (
    CreditLimitExceeded,
    HasPayments,
    ImmutableField,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from ..models import Company, Customer, Invoice, InvoiceActivity, InvoiceLineItem, InvoiceTemplate, NumberingSeries
from ..money import CENT, ZERO, quantize_amount, to_decimal, to_rate
from .numbering_service import NumberingService

logger = logging.getLogger(__name__)

QUANTITY_PLACES = Decimal('0.0001')
HUNDRED = Decimal('100')
MAX_AMOUNT = Decimal('9999999999999.99')


class InvoiceService:
    # Transitions reachable through update_invoice. Paid and partially paid are
    # reached only through allocation.
    VALID_TRANSITIONS = {
        Invoice.Status.DRAFT: [Invoice.Status.SUBMITTED, Invoice.Status.CANCELLED],
        Invoice.Status.SUBMITTED: [Invoice.Status.CANCELLED],
        Invoice.Status.PARTIALLY_PAID: [],
        Invoice.Status.PAID: [],
        Invoice.Status.CANCELLED: [],
    }

    MUTABLE_FIELDS = ('due_date', 'terms', 'notes', 'status')

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @staticmethod
    def get_customer(company: Company, customer_id: int) -> Customer:
        customer = Customer.objects.filter(company=company, pk=customer_id).first()
        if customer is None:
            raise NotFoundError("Customer not found", customer_id=customer_id)
        return customer

    @staticmethod
    def get_invoice(company: Company, invoice_id: int, lock: bool = False) -> Invoice:
        queryset = Invoice.objects.filter(company=company, pk=invoice_id)
        if lock:
            queryset = queryset.select_for_update()
        invoice = queryset.first()
        if invoice is None:
            raise NotFoundError("Invoice not found", invoice_id=invoice_id)
        return invoice

    @staticmethod
    def list_invoices(company: Company, customer_id: Optional[int] = None, status: Optional[str] = None,
                      date_from: Optional[date] = None, date_to: Optional[date] = None,
                      as_of: Optional[date] = None) -> QuerySet:
        """
        Tenant invoices, optionally filtered.

        ``status="overdue"`` selects open invoices past their due date with an
        outstanding balance as of ``as_of`` (today by default).
        """
        queryset = Invoice.objects.filter(company=company).select_related('customer')
        if customer_id is not None:
            queryset = queryset.filter(customer_id=customer_id)
        if date_from:
            queryset = queryset.filter(invoice_date__gte=date_from)
        if date_to:
            queryset = queryset.filter(invoice_date__lte=date_to)

        if status == Invoice.Status.OVERDUE:
            as_of = as_of or timezone.localdate()
            queryset = queryset.filter(
                status__in=Invoice.OPEN_STATUSES,
                due_date__lt=as_of,
                outstanding_amount__gt=0,
            )
        elif status:
            if status not in Invoice.Status.values:
                raise ValidationError(errors={"status": f"Unknown status '{status}'"})
            queryset = queryset.filter(status=status)
        return queryset

    @staticmethod
    def calculate_line_item(item_data: Dict[str, Any]) -> Dict[str, Decimal]:
        """Every component is rounded half-up to cents before it is summed."""
        quantity = to_decimal(item_data.get('quantity', 1), 'quantity').quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)
        unit_price = to_decimal(item_data.get('unit_price', 0), 'unit_price').quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)
        discount_percent = quantize_amount(to_decimal(item_data.get('discount_percent', 0), 'discount_percent'))
        tax_percent = quantize_amount(to_decimal(item_data.get('tax_percent', 0), 'tax_percent'))

        subtotal = (quantity * unit_price).quantize(CENT, rounding=ROUND_HALF_UP)
        discount_amount = (subtotal * discount_percent / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
        tax_amount = ((subtotal - discount_amount) * tax_percent / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)

        return {
            'quantity': quantity,
            'unit_price': unit_price,
            'discount_percent': discount_percent,
            'tax_percent': tax_percent,
            'subtotal': subtotal,
            'discount_amount': discount_amount,
            'tax_amount': tax_amount,
            'line_total': subtotal - discount_amount + tax_amount,
        }

    @classmethod
    def calculate_invoice_totals(cls, items: List[Dict[str, Any]]) -> Dict[str, Decimal]:
        subtotal = ZERO
        tax_amount = ZERO
        discount_amount = ZERO
        for item in items:
            calc = cls.calculate_line_item(item)
            subtotal += calc['subtotal']
            tax_amount += calc['tax_amount']
            discount_amount += calc['discount_amount']

        return {
            'subtotal': subtotal,
            'tax_amount': tax_amount,
            'discount_amount': discount_amount,
            'total_amount': subtotal + tax_amount - discount_amount,
        }

    @staticmethod
    def validate_invoice_data(lines: List[Dict[str, Any]], invoice_date: date, due_date: date) -> Dict[str, str]:
        errors = {}

        if not isinstance(due_date, date):
            errors['due_date'] = 'Due date is required'
        elif not isinstance(invoice_date, date):
            errors['invoice_date'] = 'Invoice date must be a date'
        elif due_date < invoice_date:
            errors['due_date'] = 'Due date cannot be before invoice date'

        if not lines:
            errors['lines'] = 'At least one line item is required'
            return errors

        for i, item in enumerate(lines):
            if not str(item.get('description', '')).strip():
                errors[f'lines.{i}.description'] = 'Description is required'
            for field in ('quantity', 'unit_price'):
                try:
                    value = to_decimal(item.get(field, 1 if field == 'quantity' else 0), field)
                except ValidationError as exc:
                    errors[f'lines.{i}.{field}'] = exc.errors.get(field, exc.message)
                    continue
                if value < 0:
                    errors[f'lines.{i}.{field}'] = f'{field.replace("_", " ").capitalize()} cannot be negative'
            for field in ('discount_percent', 'tax_percent'):
                try:
                    value = to_decimal(item.get(field, 0), field)
                except ValidationError as exc:
                    errors[f'lines.{i}.{field}'] = exc.errors.get(field, exc.message)
                    continue
                if not ZERO <= value <= HUNDRED:
                    errors[f'lines.{i}.{field}'] = 'Percentage must be between 0 and 100'

        return errors

    @classmethod
    def create_invoice(cls, company: Company, user, customer_id: int, lines: List[Dict[str, Any]], due_date: date,
                       invoice_date: Optional[date] = None, currency: Optional[str] = None, exchange_rate: Any = 1,
                       terms: str = "", notes: str = "", template_id: Optional[int] = None, sales_order_ref: str = "",
                       series_id: Optional[int] = None, submit: bool = False) -> Invoice:
        invoice_date = invoice_date or timezone.localdate()
        errors = cls.validate_invoice_data(lines, invoice_date, due_date)
        if errors:
            raise ValidationError(errors=errors)

        rate = to_rate(exchange_rate)
        totals = cls.calculate_invoice_totals(lines)
        if totals['total_amount'] > MAX_AMOUNT:
            raise ValidationError(errors={'lines': 'Invoice total is too large'})

        customer = cls.get_customer(company, customer_id)

        if ledger_setting("ENFORCE_CREDIT_LIMIT"):
            from .credit_service import CreditService

            # Recorded in its own transaction so a rejection still leaves its audit row.
            result = CreditService.check_credit_limit(company, user, customer.pk, totals['total_amount'])
            if not result.approved:
                raise CreditLimitExceeded(
                    result.message,
                    customer_id=customer.pk,
                    total_exposure=result.total_exposure,
                    credit_limit=result.credit_limit,
                    check_id=result.check_id,
                )

        return cls._persist_invoice(
            company, user, customer, lines, totals,
            invoice_date=invoice_date,
            due_date=due_date,
            currency=(currency or ledger_setting("DEFAULT_CURRENCY")).upper(),
            exchange_rate=rate,
            terms=terms,
            notes=notes,
            template_id=template_id,
            sales_order_ref=sales_order_ref,
            series_id=series_id,
            submit=submit,
        )

    @classmethod
    @transaction.atomic
    def _persist_invoice(cls, company, user, customer, lines, totals, *, invoice_date, due_date, currency,
                         exchange_rate, terms, notes, template_id, sales_order_ref, series_id, submit) -> Invoice:
        template = None
        if template_id is not None:
            template = InvoiceTemplate.objects.filter(company=company, pk=template_id, is_active=True).first()
            if template is None:
                raise NotFoundError("Invoice template not found", template_id=template_id)

        if series_id is not None:
            if not NumberingSeries.objects.filter(company=company, pk=series_id).exists():
                raise NotFoundError("Numbering series not found", series_id=series_id)
            invoice_number = NumberingService.next_number(series_id)
        else:
            invoice_number = NumberingService.next_number_for(company, NumberingSeries.DocumentType.INVOICE)

        invoice = Invoice.objects.create(
            company=company,
            customer=customer,
            created_by=user,
            invoice_number=invoice_number,
            status=Invoice.Status.DRAFT,
            invoice_date=invoice_date,
            due_date=due_date,
            currency=currency,
            exchange_rate=exchange_rate,
            subtotal=totals['subtotal'],
            tax_amount=totals['tax_amount'],
            discount_amount=totals['discount_amount'],
            total_amount=totals['total_amount'],
            paid_amount=ZERO,
            outstanding_amount=totals['total_amount'],
            terms=terms,
            notes=notes,
            template=template,
            sales_order_ref=sales_order_ref,
        )

        for idx, item_data in enumerate(lines):
            calc = cls.calculate_line_item(item_data)
            InvoiceLineItem.objects.create(
                invoice=invoice,
                item_code=item_data.get('item_code', ''),
                description=str(item_data['description']).strip(),
                quantity=calc['quantity'],
                unit_price=calc['unit_price'],
                discount_percent=calc['discount_percent'],
                discount_amount=calc['discount_amount'],
                tax_percent=calc['tax_percent'],
                tax_amount=calc['tax_amount'],
                line_total=calc['line_total'],
                revenue_account_ref=item_data.get('revenue_account_ref', ''),
                sort_order=idx,
            )

        cls.log_activity(invoice, user, InvoiceActivity.ActionType.CREATED, f"Invoice {invoice_number} created",
                         metadata={'total_amount': str(invoice.total_amount)})
        logger.info(f"Invoice {invoice_number} created for customer {customer.pk} total={invoice.total_amount}")

        if submit:
            cls._submit(invoice, user)
        return invoice

    @classmethod
    @transaction.atomic
    def submit_invoice(cls, company: Company, user, invoice_id: int) -> Invoice:
        invoice = cls.get_invoice(company, invoice_id, lock=True)
        if invoice.status != Invoice.Status.DRAFT:
            raise InvalidTransition(
                f"Only draft invoices can be submitted, invoice {invoice.invoice_number} is {invoice.status}",
                invoice_id=invoice.pk,
            )
        return cls._submit(invoice, user)

    @classmethod
    def _submit(cls, invoice: Invoice, user) -> Invoice:
        invoice.status = Invoice.Status.SUBMITTED
        invoice.submitted_at = timezone.now()
        invoice.version += 1
        invoice.save(update_fields=['status', 'submitted_at', 'version', 'updated_at'])
        cls.log_activity(invoice, user, InvoiceActivity.ActionType.SUBMITTED, f"Invoice {invoice.invoice_number} submitted")
        logger.info(f"Invoice {invoice.invoice_number} submitted")
        return invoice

    @classmethod
    @transaction.atomic
    def update_invoice(cls, company: Company, user, invoice_id: int, patch: Dict[str, Any]) -> Invoice:
        """
        Apply a patch of mutable fields: due_date, terms, notes and status.

        Raises:
            ImmutableField: the patch names another field, or the invoice is
                paid or cancelled.
            InvalidTransition: the status change is not allowed.
            HasPayments: cancelling an invoice with payments applied.
        """
        illegal = sorted(set(patch) - set(cls.MUTABLE_FIELDS))
        if illegal:
            raise ImmutableField(f"Fields cannot be changed after creation: {', '.join(illegal)}", fields=illegal)

        invoice = cls.get_invoice(company, invoice_id, lock=True)
        if invoice.status in (Invoice.Status.PAID, Invoice.Status.CANCELLED):
            raise ImmutableField(f"Invoice {invoice.invoice_number} is {invoice.status} and can no longer be updated",
                                 invoice_id=invoice.pk)

        changed = {}
        if 'due_date' in patch:
            due_date = patch['due_date']
            if not isinstance(due_date, date):
                raise ValidationError(errors={'due_date': 'Due date must be a date'})
            if due_date < invoice.invoice_date:
                raise ValidationError(errors={'due_date': 'Due date cannot be before invoice date'})
            if due_date != invoice.due_date:
                changed['due_date'] = (str(invoice.due_date), str(due_date))
                invoice.due_date = due_date

        for field in ('terms', 'notes'):
            if field in patch and patch[field] != getattr(invoice, field):
                changed[field] = (getattr(invoice, field), patch[field])
                setattr(invoice, field, patch[field] or "")

        new_status = patch.get('status')
        if new_status and new_status != invoice.status:
            if new_status == Invoice.Status.CANCELLED and invoice.paid_amount > 0:
                raise HasPayments(invoice_id=invoice.pk, paid_amount=invoice.paid_amount)
            if not cls.can_transition(invoice.status, new_status):
                raise InvalidTransition(f"Cannot transition from '{invoice.status}' to '{new_status}'",
                                        invoice_id=invoice.pk)

        if changed:
            invoice.save(update_fields=[*changed.keys(), 'updated_at'])
            cls.log_activity(invoice, user, InvoiceActivity.ActionType.UPDATED, "Invoice updated",
                             metadata={k: {'old': old, 'new': new} for k, (old, new) in changed.items()})

        if new_status and new_status != invoice.status:
            if new_status == Invoice.Status.SUBMITTED:
                cls._submit(invoice, user)
            else:
                cls._cancel(invoice, user, "")

        logger.info(f"Invoice {invoice.invoice_number} updated: {', '.join(sorted(patch))}")
        return invoice

    @classmethod
    @transaction.atomic
    def cancel_invoice(cls, company: Company, user, invoice_id: int, reason: str = "") -> Invoice:
        """Cancel an unpaid invoice. Its number stays consumed."""
        invoice = cls.get_invoice(company, invoice_id, lock=True)
        if invoice.status == Invoice.Status.CANCELLED:
            raise InvalidTransition(f"Invoice {invoice.invoice_number} is already cancelled", invoice_id=invoice.pk)
        if invoice.paid_amount > 0:
            raise HasPayments(invoice_id=invoice.pk, paid_amount=invoice.paid_amount)
        return cls._cancel(invoice, user, reason)

    @classmethod
    def _cancel(cls, invoice: Invoice, user, reason: str) -> Invoice:
        old_status = invoice.status
        invoice.status = Invoice.Status.CANCELLED
        invoice.cancelled_at = timezone.now()
        invoice.cancel_reason = reason or ""
        invoice.version += 1
        invoice.save(update_fields=['status', 'cancelled_at', 'cancel_reason', 'version', 'updated_at'])
        cls.log_activity(invoice, user, InvoiceActivity.ActionType.CANCELLED,
                         f"Invoice {invoice.invoice_number} cancelled. {reason}".strip(),
                         metadata={'old_status': old_status})
        logger.info(f"Invoice {invoice.invoice_number} cancelled (was {old_status})")
        return invoice

    @staticmethod
    def log_activity(invoice: Invoice, user, action: str, description: str, metadata: Dict = None) -> InvoiceActivity:
        return InvoiceActivity.objects.create(
            invoice=invoice,
            user=user,
            action=action,
            description=description,
            metadata=metadata or {},
            is_system=user is None,
        )
