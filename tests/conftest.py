from datetime import timedelta

import pytest
from django.utils import timezone

from receivables.errors import ExternalDeliveryFailure
from receivables.services import InvoiceService, PaymentService
from tests.factories import CompanyFactory, CustomerFactory, UserFactory


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def company(db):
    return CompanyFactory(slug="acme")


@pytest.fixture
def customer(company):
    return CustomerFactory(company=company, name="Globex")


@pytest.fixture
def ledger_settings(settings):
    """Override individual RECEIVABLES settings for one test."""

    def _override(**values):
        settings.RECEIVABLES = {**settings.RECEIVABLES, **values}

    return _override


@pytest.fixture
def make_invoice(company, user, customer):
    """Create an invoice with a single untaxed line through the service layer."""

    def _make(amount="100.00", *, customer_obj=None, invoice_date=None, due_date=None, submit=True, **kwargs):
        invoice_date = invoice_date or timezone.localdate()
        return InvoiceService.create_invoice(
            company,
            user,
            (customer_obj or customer).pk,
            [{"description": "Consulting", "quantity": "1", "unit_price": amount}],
            due_date=due_date or invoice_date + timedelta(days=30),
            invoice_date=invoice_date,
            submit=submit,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_payment(company, user, customer):
    def _make(amount, allocations=None, *, customer_obj=None, **kwargs):
        return PaymentService.record_payment(
            company,
            user,
            (customer_obj or customer).pk,
            amount,
            "BANK_TRANSFER",
            allocations=allocations,
            **kwargs,
        )

    return _make


class RecordingDispatcher:
    """Dispatcher double that records deliveries and fails on chosen channels."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    def send(self, record, channel, message):
        if channel in self.failing:
            raise ExternalDeliveryFailure(f"{channel} gateway unreachable", channel=channel)
        self.sent.append((record.invoice_id, record.level, channel, message))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()
