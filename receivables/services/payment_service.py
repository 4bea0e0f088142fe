import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.db import transaction
from django.utils import timezone

from ..audit_logging import audit_logger
from ..concurrency import run_with_retry
from ..conf import ledger_setting
from ..errors import (
    InvalidTransition,
    InvariantViolation,
    NotFoundError,
    OverAllocation,
    StaleInvoiceState,
    ValidationError,
)
from ..models import Company, CustomerPayment, Invoice, InvoiceActivity, NumberingSeries, PaymentAllocation
from ..money import ZERO, to_amount, to_rate
from .invoice_service import InvoiceService
from .numbering_service import NumberingService

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Records customer payments and applies them to invoices.

    Every allocation runs in one transaction that locks the payment, then the
    target invoices in primary-key order, and writes each invoice through a
    conditional update on its version. Lost races are retried by
    ``run_with_retry`` and surface as ConcurrencyConflict once exhausted.
    """

    @staticmethod
    def get_payment(company: Company, payment_id: int, lock: bool = False) -> CustomerPayment:
        queryset = CustomerPayment.objects.filter(company=company, pk=payment_id)
        if lock:
            queryset = queryset.select_for_update()
        payment = queryset.first()
        if payment is None:
            raise NotFoundError("Payment not found", payment_id=payment_id)
        return payment

    @staticmethod
    def normalize_allocations(allocations: Optional[Iterable[Dict[str, Any]]]) -> "OrderedDict[int, Decimal]":
        """Parse allocation requests, merging repeated invoice ids."""
        merged: "OrderedDict[int, Decimal]" = OrderedDict()
        errors = {}
        for i, entry in enumerate(allocations or []):
            invoice_id = entry.get('invoice_id')
            if invoice_id is None:
                errors[f'allocations.{i}.invoice_id'] = 'Invoice is required'
                continue
            try:
                amount = to_amount(entry.get('amount'), 'amount')
            except ValidationError as exc:
                errors[f'allocations.{i}.amount'] = exc.errors.get('amount', exc.message)
                continue
            if amount <= 0:
                errors[f'allocations.{i}.amount'] = 'Allocation amount must be positive'
                continue
            merged[int(invoice_id)] = merged.get(int(invoice_id), ZERO) + amount
        if errors:
            raise ValidationError(errors=errors)
        return merged

    @classmethod
    def record_payment(cls, company: Company, user, customer_id: int, amount: Any, method: str,
                       allocations: Optional[List[Dict[str, Any]]] = None, payment_date: Optional[date] = None,
                       currency: Optional[str] = None, exchange_rate: Any = 1, reference: str = "",
                       notes: str = "") -> CustomerPayment:
        """
        Record a payment, optionally allocating it in the same transaction.

        Without allocations the payment is left fully unallocated. With
        allocations, either the payment and every allocation persist, or
        nothing does.
        """
        amount = to_amount(amount, 'amount')
        if amount <= 0:
            raise ValidationError(errors={'amount': 'Payment amount must be positive'})
        if method not in CustomerPayment.Method.values:
            raise ValidationError(errors={'method': f"Unknown payment method '{method}'"})
        if payment_date is not None and not isinstance(payment_date, date):
            raise ValidationError(errors={'payment_date': 'Payment date must be a date'})
        rate = to_rate(exchange_rate)
        requests = cls.normalize_allocations(allocations)
        customer = InvoiceService.get_customer(company, customer_id)

        def _record():
            payment = CustomerPayment.objects.create(
                company=company,
                customer=customer,
                payment_number=NumberingService.next_number_for(company, NumberingSeries.DocumentType.PAYMENT),
                payment_date=payment_date or timezone.localdate(),
                amount=amount,
                currency=(currency or ledger_setting("DEFAULT_CURRENCY")).upper(),
                exchange_rate=rate,
                payment_method=method,
                reference=reference,
                notes=notes,
                status=CustomerPayment.Status.COMPLETED,
                allocated_amount=ZERO,
                unallocated_amount=amount,
                created_by=user,
            )
            logger.info(f"Payment {payment.payment_number} recorded for customer {customer.pk}: {amount}")
            if requests:
                cls._apply_allocations(company, user, payment, requests)
            return payment

        return run_with_retry(_record)

    @classmethod
    def allocate_payment(cls, company: Company, user, payment_id: int,
                         allocations: List[Dict[str, Any]]) -> CustomerPayment:
        """Allocate the remaining balance of a recorded payment. An empty list changes nothing."""
        requests = cls.normalize_allocations(allocations)
        if not requests:
            return cls.get_payment(company, payment_id)

        def _allocate():
            payment = cls.get_payment(company, payment_id, lock=True)
            cls._apply_allocations(company, user, payment, requests)
            return payment

        return run_with_retry(_allocate)

    @classmethod
    def auto_allocate_payment(cls, company: Company, user, payment_id: int) -> CustomerPayment:
        """Apply the unallocated balance to the customer's open invoices, oldest due date first."""

        def _auto_allocate():
            payment = cls.get_payment(company, payment_id, lock=True)
            remaining = payment.unallocated_amount
            if remaining <= 0:
                return payment

            candidates = list(
                Invoice.objects.select_for_update()
                .filter(
                    company=company,
                    customer_id=payment.customer_id,
                    status__in=Invoice.OPEN_STATUSES,
                    outstanding_amount__gt=0,
                )
                .order_by('pk')
            )
            candidates.sort(key=lambda inv: (inv.due_date, inv.invoice_date, inv.pk))

            requests: "OrderedDict[int, Decimal]" = OrderedDict()
            for invoice in candidates:
                if remaining <= 0:
                    break
                portion = min(remaining, invoice.outstanding_amount)
                requests[invoice.pk] = portion
                remaining -= portion

            if requests:
                cls._apply_allocations(company, user, payment, requests)
            return payment

        return run_with_retry(_auto_allocate)

    @classmethod
    def _apply_allocations(cls, company: Company, user, payment: CustomerPayment,
                           requests: "OrderedDict[int, Decimal]") -> List[PaymentAllocation]:
        if payment.status != CustomerPayment.Status.COMPLETED:
            raise InvalidTransition(f"Payment {payment.payment_number} is {payment.status} and cannot be allocated",
                                    payment_id=payment.pk)

        requested_total = sum(requests.values(), ZERO)
        if requested_total > payment.unallocated_amount:
            raise OverAllocation(
                f"Allocations of {requested_total} exceed the unallocated {payment.unallocated_amount} "
                f"of payment {payment.payment_number}",
                payment_id=payment.pk,
                requested=requested_total,
                available=payment.unallocated_amount,
            )

        invoices = list(
            Invoice.objects.select_for_update()
            .filter(company=company, pk__in=list(requests))
            .order_by('pk')
        )
        found = {invoice.pk for invoice in invoices}
        missing = [pk for pk in requests if pk not in found]
        if missing:
            raise NotFoundError("Invoice not found", invoice_ids=missing)

        for invoice in invoices:
            amount = requests[invoice.pk]
            if invoice.customer_id != payment.customer_id:
                raise InvariantViolation(
                    f"Invoice {invoice.invoice_number} belongs to another customer",
                    invoice_id=invoice.pk,
                    payment_id=payment.pk,
                )
            if not invoice.is_open:
                raise InvalidTransition(
                    f"Invoice {invoice.invoice_number} is {invoice.status} and cannot receive payments",
                    invoice_id=invoice.pk,
                )
            if amount > invoice.outstanding_amount:
                raise OverAllocation(
                    f"Allocation of {amount} exceeds the outstanding {invoice.outstanding_amount} "
                    f"of invoice {invoice.invoice_number}",
                    invoice_id=invoice.pk,
                    requested=amount,
                    available=invoice.outstanding_amount,
                )

        now = timezone.now()
        created = []
        for invoice in invoices:
            amount = requests[invoice.pk]
            allocation = PaymentAllocation.objects.create(
                company=company,
                payment=payment,
                invoice=invoice,
                amount=amount,
                allocation_date=now,
                created_by=user,
            )
            cls._write_invoice_amounts(invoice, amount)
            InvoiceService.log_activity(
                invoice, user, InvoiceActivity.ActionType.PAYMENT_ALLOCATED,
                f"{amount} allocated from payment {payment.payment_number}",
                metadata={'payment_id': payment.pk, 'allocation_id': allocation.pk, 'amount': str(amount)},
            )
            audit_logger.audit(
                "payment.allocated", user=user, company=company, resource="payment_allocation",
                allocation_id=allocation.pk, payment_id=payment.pk, invoice_id=invoice.pk,
                amount=amount, invoice_status=invoice.status,
            )
            created.append(allocation)

        cls._write_payment_amounts(payment, requested_total)
        logger.info(f"Payment {payment.payment_number} allocated {requested_total} across {len(created)} invoice(s)")
        return created

    @staticmethod
    def _write_invoice_amounts(invoice: Invoice, delta: Decimal) -> None:
        """Apply ``delta`` to the paid amount unless the invoice moved on since it was read."""
        paid = invoice.paid_amount + delta
        if paid < 0 or paid > invoice.total_amount:
            raise OverAllocation(
                f"Invoice {invoice.invoice_number} paid amount would become {paid}",
                invoice_id=invoice.pk,
            )
        outstanding = invoice.total_amount - paid
        status = Invoice.status_for_paid(paid, invoice.total_amount)

        updated = Invoice.objects.filter(pk=invoice.pk, version=invoice.version).update(
            paid_amount=paid,
            outstanding_amount=outstanding,
            status=status,
            version=invoice.version + 1,
            updated_at=timezone.now(),
        )
        if not updated:
            raise StaleInvoiceState(invoice_id=invoice.pk, expected_version=invoice.version)

        invoice.paid_amount = paid
        invoice.outstanding_amount = outstanding
        invoice.status = status
        invoice.version += 1

    @staticmethod
    def _write_payment_amounts(payment: CustomerPayment, delta: Decimal) -> None:
        allocated = payment.allocated_amount + delta
        unallocated = payment.amount - allocated
        updated = CustomerPayment.objects.filter(pk=payment.pk, version=payment.version).update(
            allocated_amount=allocated,
            unallocated_amount=unallocated,
            version=payment.version + 1,
            updated_at=timezone.now(),
        )
        if not updated:
            raise StaleInvoiceState("Payment changed while the allocation was being applied", payment_id=payment.pk)

        payment.allocated_amount = allocated
        payment.unallocated_amount = unallocated
        payment.version += 1

    @classmethod
    def reverse_allocation(cls, company: Company, user, allocation_id: int, reason: str = "") -> PaymentAllocation:
        """
        Undo an allocation by appending a compensating row with the negated amount.

        The original row is never touched. A reversal row cannot itself be
        reversed, and each allocation can be reversed once.
        """

        def _reverse():
            original = PaymentAllocation.objects.filter(company=company, pk=allocation_id).first()
            if original is None:
                raise NotFoundError("Allocation not found", allocation_id=allocation_id)
            if original.is_reversal:
                raise InvariantViolation("A reversal cannot be reversed", allocation_id=allocation_id)

            payment = cls.get_payment(company, original.payment_id, lock=True)
            invoice = InvoiceService.get_invoice(company, original.invoice_id, lock=True)
            if PaymentAllocation.objects.filter(reverses=original).exists():
                raise InvariantViolation("Allocation has already been reversed", allocation_id=allocation_id)

            reversal = PaymentAllocation.objects.create(
                company=company,
                payment=payment,
                invoice=invoice,
                amount=-original.amount,
                allocation_date=timezone.now(),
                reverses=original,
                reason=reason,
                created_by=user,
            )
            cls._write_invoice_amounts(invoice, -original.amount)
            cls._write_payment_amounts(payment, -original.amount)

            InvoiceService.log_activity(
                invoice, user, InvoiceActivity.ActionType.ALLOCATION_REVERSED,
                f"{original.amount} from payment {payment.payment_number} reversed. {reason}".strip(),
                metadata={'allocation_id': original.pk, 'reversal_id': reversal.pk, 'amount': str(original.amount)},
            )
            audit_logger.audit(
                "payment.allocation_reversed", user=user, company=company, resource="payment_allocation",
                allocation_id=original.pk, reversal_id=reversal.pk, payment_id=payment.pk,
                invoice_id=invoice.pk, amount=original.amount, reason=reason,
            )
            logger.info(f"Allocation {original.pk} reversed ({original.amount}) on invoice {invoice.invoice_number}")
            return reversal

        return run_with_retry(_reverse)
