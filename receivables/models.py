from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from .errors import HasPayments, ImmutableField


MONEY = dict(max_digits=15, decimal_places=2)


class Company(models.Model):
    name = models.CharField(max_length=255)
    slug = models.SlugField(unique=True)
    base_currency = models.CharField(max_length=3, default="USD")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "Companies"

    def __str__(self):
        return self.name


class Customer(models.Model):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="customers")
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)
    address = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        indexes = [
            models.Index(fields=['company', 'name'], name='recv_customer_company_idx'),
        ]

    def __str__(self):
        return self.name


class NumberingSeries(models.Model):
    class DocumentType(models.TextChoices):
        INVOICE = "invoice", "Invoice"
        PAYMENT = "payment", "Customer Payment"
        STATEMENT = "statement", "Customer Statement"

    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="numbering_series")
    series_name = models.CharField(max_length=100)
    document_type = models.CharField(max_length=20, choices=DocumentType.choices, default=DocumentType.INVOICE)
    prefix = models.CharField(max_length=20)
    # Next number to issue.
    current_number = models.PositiveBigIntegerField(default=1)
    pad_length = models.PositiveSmallIntegerField(default=6)
    suffix = models.CharField(max_length=20, blank=True)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = "Numbering series"
        indexes = [
            models.Index(fields=['company', 'document_type', 'is_default'], name='recv_series_lookup_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['company', 'document_type'],
                condition=Q(is_default=True, is_active=True),
                name="one_default_series_per_document_type",
            ),
        ]

    def __str__(self):
        return f"{self.series_name} ({self.prefix})"

    @property
    def max_number(self) -> int:
        return 10 ** self.pad_length - 1

    def format_number(self, number: int) -> str:
        return f"{self.prefix}{str(number).zfill(self.pad_length)}{self.suffix}"


class InvoiceTemplate(models.Model):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="invoice_templates")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    template = models.TextField()
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class Invoice(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        SUBMITTED = "submitted", "Submitted"
        PARTIALLY_PAID = "partially_paid", "Partially Paid"
        PAID = "paid", "Paid"
        # Derived at read time only, never stored.
        OVERDUE = "overdue", "Overdue"
        CANCELLED = "cancelled", "Cancelled"

    OPEN_STATUSES = (Status.SUBMITTED, Status.PARTIALLY_PAID)

    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="invoices")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="invoices")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="created_receivable_invoices")
    invoice_number = models.CharField(max_length=100, db_index=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    invoice_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField()
    submitted_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancel_reason = models.TextField(blank=True)

    currency = models.CharField(max_length=3, default="USD")
    exchange_rate = models.DecimalField(max_digits=15, decimal_places=6, default=Decimal('1.000000'))

    subtotal = models.DecimalField(**MONEY, default=Decimal('0.00'))
    tax_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    discount_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    total_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    paid_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    outstanding_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))

    terms = models.TextField(blank=True)
    notes = models.TextField(blank=True)
    template = models.ForeignKey(InvoiceTemplate, on_delete=models.SET_NULL, null=True, blank=True, related_name="invoices")
    sales_order_ref = models.CharField(max_length=100, blank=True)

    # Bumped on every allocation write; guards against lost updates.
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ('company', 'invoice_number')
        ordering = ['-invoice_date', '-id']
        indexes = [
            models.Index(fields=['company', 'status'], name='recv_invoice_status_idx'),
            models.Index(fields=['company', 'due_date'], name='recv_invoice_due_idx'),
            models.Index(fields=['customer', 'status'], name='recv_invoice_customer_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(paid_amount__gte=0), name="invoice_paid_non_negative"),
            models.CheckConstraint(condition=Q(paid_amount__lte=F('total_amount')), name="invoice_paid_within_total"),
        ]

    def __str__(self):
        return f"{self.invoice_number} - {self.customer.name}"

    @staticmethod
    def status_for_paid(paid: Decimal, total: Decimal) -> str:
        if paid == 0:
            return Invoice.Status.SUBMITTED
        if paid < total:
            return Invoice.Status.PARTIALLY_PAID
        return Invoice.Status.PAID

    @property
    def is_open(self) -> bool:
        return self.status in self.OPEN_STATUSES

    def days_overdue(self, as_of: Optional[date] = None) -> int:
        as_of = as_of or timezone.localdate()
        return (as_of - self.due_date).days

    def is_overdue(self, as_of: Optional[date] = None) -> bool:
        if not self.is_open:
            return False
        return self.days_overdue(as_of) > 0 and self.outstanding_amount > 0

    @property
    def effective_status(self) -> str:
        if self.is_overdue():
            return self.Status.OVERDUE
        return self.status

    def delete(self, *args, **kwargs):
        if self.allocations.exists():
            raise HasPayments(f"Invoice {self.invoice_number} has allocations and cannot be deleted; cancel it instead")
        return super().delete(*args, **kwargs)


class InvoiceLineItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="line_items")
    item_code = models.CharField(max_length=100, blank=True)
    description = models.TextField()
    quantity = models.DecimalField(max_digits=15, decimal_places=4, default=Decimal('1.0000'))
    unit_price = models.DecimalField(max_digits=15, decimal_places=4, default=Decimal('0.0000'))
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    discount_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    tax_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('0.00'))
    tax_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    line_total = models.DecimalField(**MONEY, default=Decimal('0.00'))
    revenue_account_ref = models.CharField(max_length=100, blank=True)
    sort_order = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['sort_order', 'id']

    def _assert_draft(self):
        if self.invoice.status != Invoice.Status.DRAFT:
            raise ImmutableField(
                f"Line items of invoice {self.invoice.invoice_number} are locked once it leaves draft",
                invoice_id=self.invoice_id,
            )

    def save(self, *args, **kwargs):
        self._assert_draft()
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        self._assert_draft()
        return super().delete(*args, **kwargs)


class InvoiceActivity(models.Model):
    class ActionType(models.TextChoices):
        CREATED = "created", "Invoice Created"
        SUBMITTED = "submitted", "Invoice Submitted"
        UPDATED = "updated", "Invoice Updated"
        CANCELLED = "cancelled", "Invoice Cancelled"
        PAYMENT_ALLOCATED = "payment_allocated", "Payment Allocated"
        ALLOCATION_REVERSED = "allocation_reversed", "Allocation Reversed"
        DUNNING = "dunning", "Dunning Level Reached"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="activities")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=50, choices=ActionType.choices)
    description = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    is_system = models.BooleanField(default=False)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp', '-id']
        verbose_name_plural = "Invoice activities"


class CustomerPayment(models.Model):
    class Method(models.TextChoices):
        CASH = "CASH", "Cash"
        BANK_TRANSFER = "BANK_TRANSFER", "Bank Transfer"
        CREDIT_CARD = "CREDIT_CARD", "Credit Card"
        CHECK = "CHECK", "Check"
        MOBILE_PAYMENT = "MOBILE_PAYMENT", "Mobile Payment"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="customer_payments")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="payments")
    payment_number = models.CharField(max_length=100, db_index=True)
    payment_date = models.DateField(default=timezone.localdate)
    amount = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=3, default="USD")
    exchange_rate = models.DecimalField(max_digits=15, decimal_places=6, default=Decimal('1.000000'))
    payment_method = models.CharField(max_length=20, choices=Method.choices)
    reference = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.COMPLETED)
    allocated_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    unallocated_amount = models.DecimalField(**MONEY, default=Decimal('0.00'))
    version = models.PositiveIntegerField(default=1)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ('company', 'payment_number')
        ordering = ['-payment_date', '-id']
        indexes = [
            models.Index(fields=['customer', 'payment_date'], name='recv_payment_customer_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
            models.CheckConstraint(condition=Q(unallocated_amount__gte=0), name="payment_unallocated_non_negative"),
        ]

    def __str__(self):
        return f"{self.payment_number} ({self.amount} {self.currency})"


class AppendOnlyModel(models.Model):
    """Rows are written once. Corrections are new rows, never edits."""

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableField(f"{self.__class__.__name__} rows cannot be modified", pk=self.pk)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableField(f"{self.__class__.__name__} rows cannot be deleted", pk=self.pk)


class PaymentAllocation(AppendOnlyModel):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="payment_allocations")
    payment = models.ForeignKey(CustomerPayment, on_delete=models.PROTECT, related_name="allocations")
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="allocations")
    # Negative for compensating rows.
    amount = models.DecimalField(**MONEY)
    allocation_date = models.DateTimeField(default=timezone.now)
    reverses = models.OneToOneField('self', on_delete=models.PROTECT, null=True, blank=True, related_name="reversal")
    reason = models.TextField(blank=True)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['allocation_date', 'id']
        indexes = [
            models.Index(fields=['invoice', 'allocation_date'], name='recv_alloc_invoice_idx'),
            models.Index(fields=['payment'], name='recv_alloc_payment_idx'),
        ]

    def __str__(self):
        return f"{self.payment.payment_number} -> {self.invoice.invoice_number}: {self.amount}"

    @property
    def is_reversal(self) -> bool:
        return self.reverses_id is not None


class CustomerCreditLimit(models.Model):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="credit_limits")
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="credit_limits")
    credit_limit = models.DecimalField(**MONEY)
    currency = models.CharField(max_length=3, default="USD")
    effective_date = models.DateField(default=timezone.localdate)
    expiry_date = models.DateField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    approved_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-effective_date', '-id']
        indexes = [
            models.Index(fields=['customer', 'is_active'], name='recv_limit_customer_idx'),
        ]

    def __str__(self):
        return f"{self.customer.name}: {self.credit_limit} {self.currency}"

    def is_effective(self, as_of: date) -> bool:
        if not self.is_active or self.effective_date > as_of:
            return False
        return self.expiry_date is None or self.expiry_date > as_of


class CreditLimitCheck(AppendOnlyModel):
    class Policy(models.TextChoices):
        LIMIT = "limit", "Active credit limit"
        REJECT = "reject", "No limit: reject"
        UNLIMITED = "unlimited", "No limit: unlimited"

    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="credit_limit_checks")
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="credit_limit_checks")
    invoice = models.ForeignKey(Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="credit_limit_checks")
    check_date = models.DateTimeField(default=timezone.now)
    current_outstanding = models.DecimalField(**MONEY)
    credit_limit = models.DecimalField(**MONEY, null=True, blank=True)
    proposed_amount = models.DecimalField(**MONEY)
    total_exposure = models.DecimalField(**MONEY)
    available_credit = models.DecimalField(**MONEY, null=True, blank=True)
    is_approved = models.BooleanField()
    policy = models.CharField(max_length=20, choices=Policy.choices, default=Policy.LIMIT)
    approved_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    approval_notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-check_date', '-id']


class DunningLevel(models.TextChoices):
    FIRST_REMINDER = "first_reminder", "First Reminder"
    SECOND_REMINDER = "second_reminder", "Second Reminder"
    FINAL_NOTICE = "final_notice", "Final Notice"
    LEGAL_ACTION = "legal_action", "Legal Action"


DUNNING_LEVEL_ORDER = [
    DunningLevel.FIRST_REMINDER,
    DunningLevel.SECOND_REMINDER,
    DunningLevel.FINAL_NOTICE,
    DunningLevel.LEGAL_ACTION,
]


class DunningConfiguration(models.Model):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="dunning_configurations")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class DunningLevelConfig(models.Model):
    configuration = models.ForeignKey(DunningConfiguration, on_delete=models.CASCADE, related_name="levels")
    level = models.CharField(max_length=20, choices=DunningLevel.choices)
    days_after_due = models.PositiveIntegerField()
    email_template = models.TextField(blank=True)
    sms_template = models.TextField(blank=True)
    letter_template = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['days_after_due']
        unique_together = ('configuration', 'level')


class DunningRecord(models.Model):
    class Channel(models.TextChoices):
        EMAIL = "email", "Email"
        SMS = "sms", "SMS"
        LETTER = "letter", "Letter"

    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="dunning_records")
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="dunning_records")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="dunning_records")
    level = models.CharField(max_length=20, choices=DunningLevel.choices)
    # Due date of the overdue cycle this record belongs to.
    due_date = models.DateField()
    dunning_date = models.DateTimeField(default=timezone.now)
    days_overdue = models.IntegerField(default=0)
    outstanding_amount = models.DecimalField(**MONEY)
    channels = models.JSONField(default=list, blank=True)
    email_sent = models.BooleanField(default=False)
    sms_sent = models.BooleanField(default=False)
    letter_sent = models.BooleanField(default=False)
    response = models.TextField(blank=True)
    next_dunning_date = models.DateField(null=True, blank=True)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-dunning_date', '-id']
        constraints = [
            models.UniqueConstraint(fields=['invoice', 'level', 'due_date'], name="dunning_once_per_level_per_cycle"),
        ]

    def __str__(self):
        return f"{self.invoice.invoice_number}: {self.get_level_display()}"

    def sent_flag(self, channel: str) -> str:
        return f"{channel}_sent"

    @property
    def pending_channels(self):
        return [channel for channel in self.channels if not getattr(self, self.sent_flag(channel))]


class CustomerStatement(models.Model):
    company = models.ForeignKey(Company, on_delete=models.CASCADE, related_name="customer_statements")
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="statements")
    statement_number = models.CharField(max_length=100, db_index=True)
    statement_date = models.DateField(default=timezone.localdate)
    from_date = models.DateField()
    to_date = models.DateField()
    opening_balance = models.DecimalField(**MONEY)
    closing_balance = models.DecimalField(**MONEY)
    total_invoices = models.DecimalField(**MONEY, default=Decimal('0.00'))
    total_payments = models.DecimalField(**MONEY, default=Decimal('0.00'))
    lines = models.JSONField(default=list, blank=True)
    email_sent = models.BooleanField(default=False)
    email_sent_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-statement_date', '-id']

    def __str__(self):
        return f"{self.statement_number} ({self.from_date} - {self.to_date})"
