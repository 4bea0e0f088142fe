import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from django.db import transaction
from django.db.models import Q, Sum
from django.utils import timezone

from ..audit_logging import audit_logger
from ..conf import ledger_setting
from ..errors import NotFoundError, ValidationError
from ..models import Company, CreditLimitCheck, Customer, CustomerCreditLimit, Invoice
from ..money import ZERO, quantize_amount, to_amount
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditCheckResult:
    approved: bool
    current_outstanding: Decimal
    credit_limit: Optional[Decimal]
    proposed_amount: Decimal
    total_exposure: Decimal
    available_credit: Optional[Decimal]
    message: str
    check_id: Optional[int] = None


class CreditService:
    @staticmethod
    def current_outstanding(customer: Customer) -> Decimal:
        """Sum of outstanding balances over the customer's non-cancelled invoices."""
        total = (
            Invoice.objects
            .filter(customer=customer)
            .exclude(status=Invoice.Status.CANCELLED)
            .aggregate(total=Sum('outstanding_amount'))['total']
        )
        return quantize_amount(total or ZERO)

    @staticmethod
    def get_active_limit(customer: Customer, as_of: Optional[date] = None) -> Optional[CustomerCreditLimit]:
        as_of = as_of or timezone.localdate()
        return (
            CustomerCreditLimit.objects
            .filter(customer=customer, is_active=True, effective_date__lte=as_of)
            .filter(Q(expiry_date__isnull=True) | Q(expiry_date__gt=as_of))
            .order_by('-effective_date', '-id')
            .first()
        )

    @staticmethod
    def resolve_policy(no_limit_policy: Optional[str]) -> str:
        policy = (no_limit_policy or ledger_setting("NO_CREDIT_LIMIT_POLICY") or "").strip().lower()
        if policy not in (CreditLimitCheck.Policy.REJECT, CreditLimitCheck.Policy.UNLIMITED):
            raise ValidationError(errors={'no_limit_policy': f"Unknown no-limit policy '{policy}'"})
        return policy

    @classmethod
    @transaction.atomic
    def check_credit_limit(cls, company: Company, user, customer_id: int, proposed_amount: Any,
                           invoice_id: Optional[int] = None, no_limit_policy: Optional[str] = None) -> CreditCheckResult:
        """
        Evaluate a proposed charge against the customer's active credit limit.

        The evaluation is appended to the CreditLimitCheck log whether it is
        approved or not. When the customer has no active limit the outcome
        follows ``no_limit_policy`` or the NO_CREDIT_LIMIT_POLICY setting.
        """
        proposed = to_amount(proposed_amount, 'proposed_amount')
        if proposed < 0:
            raise ValidationError(errors={'proposed_amount': 'Proposed amount cannot be negative'})

        customer = InvoiceService.get_customer(company, customer_id)
        invoice = None
        if invoice_id is not None:
            invoice = InvoiceService.get_invoice(company, invoice_id)
            if invoice.customer_id != customer.pk:
                raise NotFoundError("Invoice not found for customer", invoice_id=invoice_id, customer_id=customer.pk)

        outstanding = cls.current_outstanding(customer)
        exposure = outstanding + proposed
        limit = cls.get_active_limit(customer)

        if limit is not None:
            policy = CreditLimitCheck.Policy.LIMIT
            credit_limit = limit.credit_limit
            approved = exposure <= credit_limit
            available = max(credit_limit - exposure, ZERO)
            if approved:
                message = f"Approved: exposure {exposure} within limit {credit_limit}"
            else:
                message = f"Credit limit exceeded: exposure {exposure} over limit {credit_limit} by {exposure - credit_limit}"
        else:
            policy = cls.resolve_policy(no_limit_policy)
            credit_limit = None
            available = None
            approved = policy == CreditLimitCheck.Policy.UNLIMITED
            if approved:
                message = "Approved: no credit limit set, unlimited credit policy"
            else:
                message = "Rejected: no active credit limit for customer"

        check = CreditLimitCheck.objects.create(
            company=company,
            customer=customer,
            invoice=invoice,
            current_outstanding=outstanding,
            credit_limit=credit_limit,
            proposed_amount=proposed,
            total_exposure=exposure,
            available_credit=available,
            is_approved=approved,
            policy=policy,
            approved_by=user,
            approval_notes=message,
        )

        audit_logger.audit(
            "credit.checked", user=user, company=company, resource="credit_limit_check",
            check_id=check.pk, customer_id=customer.pk, approved=approved, policy=policy,
            total_exposure=exposure, credit_limit=credit_limit,
        )
        if not approved:
            logger.warning(f"Credit check {check.pk} rejected for customer {customer.pk}: {message}")

        return CreditCheckResult(
            approved=approved,
            current_outstanding=outstanding,
            credit_limit=credit_limit,
            proposed_amount=proposed,
            total_exposure=exposure,
            available_credit=available,
            message=message,
            check_id=check.pk,
        )

    @staticmethod
    @transaction.atomic
    def set_credit_limit(company: Company, user, customer_id: int, amount: Any, currency: Optional[str] = None,
                         effective_date: Optional[date] = None, expiry_date: Optional[date] = None,
                         notes: str = "") -> CustomerCreditLimit:
        """Install a new active limit, deactivating any other active limit of the customer."""
        credit_limit = to_amount(amount, 'credit_limit')
        if credit_limit < 0:
            raise ValidationError(errors={'credit_limit': 'Credit limit cannot be negative'})
        effective_date = effective_date or timezone.localdate()
        if expiry_date is not None and expiry_date <= effective_date:
            raise ValidationError(errors={'expiry_date': 'Expiry date must be after the effective date'})

        customer = InvoiceService.get_customer(company, customer_id)
        # Serializes concurrent limit changes for one customer.
        Customer.objects.select_for_update().filter(pk=customer.pk).first()

        deactivated = CustomerCreditLimit.objects.filter(customer=customer, is_active=True).update(
            is_active=False, updated_at=timezone.now(),
        )
        limit = CustomerCreditLimit.objects.create(
            company=company,
            customer=customer,
            credit_limit=credit_limit,
            currency=(currency or ledger_setting("DEFAULT_CURRENCY")).upper(),
            effective_date=effective_date,
            expiry_date=expiry_date,
            is_active=True,
            approved_by=user,
            notes=notes,
        )
        logger.info(f"Credit limit {credit_limit} set for customer {customer.pk} ({deactivated} previous deactivated)")
        return limit

    @staticmethod
    def deactivate_credit_limit(company: Company, user, limit_id: int) -> CustomerCreditLimit:
        limit = CustomerCreditLimit.objects.filter(company=company, pk=limit_id).first()
        if limit is None:
            raise NotFoundError("Credit limit not found", limit_id=limit_id)
        if limit.is_active:
            limit.is_active = False
            limit.save(update_fields=['is_active', 'updated_at'])
            logger.info(f"Credit limit {limit.pk} of customer {limit.customer_id} deactivated by user {getattr(user, 'id', None)}")
        return limit
