from datetime import date, timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from receivables.errors import NotFoundError, ValidationError
from receivables.models import CustomerStatement
from receivables.services import InvoiceService, ReportsService
from receivables.services.reports_service import AGING_BUCKETS, aging_bucket
from tests.factories import CustomerFactory

AS_OF = date(2024, 6, 30)


class TestAgingBucket:
    @pytest.mark.parametrize("days, bucket", [
        (-10, "current"),
        (0, "current"),
        (1, "days_30"),
        (30, "days_30"),
        (31, "days_60"),
        (60, "days_60"),
        (61, "days_90"),
        (90, "days_90"),
        (91, "over_90"),
        (400, "over_90"),
    ])
    def test_boundaries(self, days, bucket):
        assert aging_bucket(days) == bucket


@pytest.mark.django_db
class TestAgingReport:
    @pytest.fixture
    def aged_invoices(self, make_invoice):
        due_dates = {
            "current": date(2024, 7, 15),
            "due_today": date(2024, 6, 30),
            "days_30": date(2024, 6, 10),
            "days_60": date(2024, 5, 1),
            "days_90": date(2024, 4, 15),
            "over_90": date(2024, 1, 1),
        }
        return {
            name: make_invoice("100.00", invoice_date=due - timedelta(days=30), due_date=due)
            for name, due in due_dates.items()
        }

    def test_buckets(self, company, customer, aged_invoices):
        [row] = ReportsService.aging_report(company, as_of=AS_OF)

        assert row.customer_id == customer.pk
        assert row.current == Decimal("200.00")
        assert row.days_30 == Decimal("100.00")
        assert row.days_60 == Decimal("100.00")
        assert row.days_90 == Decimal("100.00")
        assert row.over_90 == Decimal("100.00")
        assert row.total == Decimal("600.00")
        assert {line.days_overdue for line in row.invoices} == {0, 20, 60, 76, 181}

    def test_buckets_sum_to_outstanding(self, company, customer, make_invoice, make_payment):
        first = make_invoice("120.00", invoice_date=date(2024, 1, 1), due_date=date(2024, 1, 31))
        make_invoice("80.00", invoice_date=date(2024, 5, 1), due_date=date(2024, 5, 31))
        make_payment("20.00", [{"invoice_id": first.pk, "amount": "20.00"}])

        [row] = ReportsService.aging_report(company, customer_id=customer.pk)

        assert sum((getattr(row, bucket) for bucket in AGING_BUCKETS), Decimal("0")) == row.total
        assert row.total == Decimal("180.00")
        assert sum((line.outstanding for line in row.invoices), Decimal("0")) == row.total

    def test_later_allocations_are_excluded(self, company, make_invoice, make_payment):
        yesterday = timezone.localdate() - timedelta(days=1)
        invoice = make_invoice("100.00", invoice_date=yesterday - timedelta(days=40), due_date=yesterday - timedelta(days=10))
        make_payment("100.00", [{"invoice_id": invoice.pk, "amount": "100.00"}])

        [row] = ReportsService.aging_report(company, as_of=yesterday)
        assert row.days_30 == Decimal("100.00")
        assert ReportsService.aging_report(company) == []

    def test_reversed_allocation_reopens_balance(self, company, user, make_invoice, make_payment):
        from receivables.services import PaymentService

        invoice = make_invoice("100.00", invoice_date=date(2024, 1, 1), due_date=date(2024, 1, 31))
        payment = make_payment("100.00", [{"invoice_id": invoice.pk, "amount": "100.00"}])
        PaymentService.reverse_allocation(company, user, payment.allocations.get().pk)

        [row] = ReportsService.aging_report(company)
        assert row.over_90 == Decimal("100.00")

    def test_drafts_cancelled_and_future_invoices_excluded(self, company, user, make_invoice):
        make_invoice("10.00", invoice_date=date(2024, 1, 1), due_date=date(2024, 1, 31), submit=False)
        cancelled = make_invoice("20.00", invoice_date=date(2024, 1, 1), due_date=date(2024, 1, 31))
        InvoiceService.cancel_invoice(company, user, cancelled.pk)
        make_invoice("30.00", invoice_date=date(2024, 7, 1), due_date=date(2024, 7, 31))

        assert ReportsService.aging_report(company, as_of=AS_OF) == []

    def test_one_row_per_customer(self, company, make_invoice):
        make_invoice("10.00", invoice_date=date(2024, 6, 1), due_date=date(2024, 6, 20))
        other = CustomerFactory(company=company, name="Acme Supplies")
        make_invoice("15.00", customer_obj=other, invoice_date=date(2024, 6, 1), due_date=date(2024, 6, 20))

        rows = ReportsService.aging_report(company, as_of=AS_OF)

        assert [row.customer_name for row in rows] == ["Acme Supplies", "Globex"]
        assert [len(row.invoices) for row in rows] == [1, 1]

    def test_unknown_customer(self, company):
        with pytest.raises(NotFoundError):
            ReportsService.aging_report(company, customer_id=CustomerFactory().pk)


@pytest.mark.django_db
class TestCustomerStatement:
    @pytest.fixture
    def february(self, make_invoice, make_payment):
        january = make_invoice("100.00", invoice_date=date(2024, 1, 10), due_date=date(2024, 2, 9))
        make_payment("40.00", [{"invoice_id": january.pk, "amount": "40.00"}], payment_date=date(2024, 1, 20))
        make_invoice("200.00", invoice_date=date(2024, 2, 5), due_date=date(2024, 3, 6))
        make_payment("50.00", payment_date=date(2024, 2, 5))
        make_invoice("500.00", invoice_date=date(2024, 3, 5), due_date=date(2024, 4, 4))
        make_invoice("999.00", invoice_date=date(2024, 2, 10), due_date=date(2024, 3, 10), submit=False)

    def test_balances(self, company, user, customer, february):
        statement = ReportsService.customer_statement(
            company, user, customer.pk, date(2024, 2, 1), date(2024, 2, 29), persist=False,
        )

        assert statement.opening_balance == Decimal("60.00")
        assert statement.total_invoices == Decimal("200.00")
        assert statement.total_payments == Decimal("50.00")
        assert statement.closing_balance == Decimal("210.00")
        assert statement.statement_id is None

    def test_lines_are_chronological_with_invoices_first(self, company, user, customer, february):
        statement = ReportsService.customer_statement(
            company, user, customer.pk, date(2024, 2, 1), date(2024, 2, 29), persist=False,
        )

        assert [line.kind for line in statement.lines] == ["invoice", "payment"]
        assert [line.balance for line in statement.lines] == [Decimal("260.00"), Decimal("210.00")]
        assert statement.lines[-1].balance == statement.closing_balance

    def test_snapshot_is_stored(self, company, user, customer, february):
        statement = ReportsService.customer_statement(company, user, customer.pk, date(2024, 2, 1), date(2024, 2, 29))

        snapshot = CustomerStatement.objects.get(pk=statement.statement_id)
        assert snapshot.statement_number == "STMT-000001"
        assert snapshot.closing_balance == Decimal("210.00")
        assert snapshot.lines[0]["debit"] == "200.00"
        assert snapshot.lines[1]["balance"] == "210.00"

    def test_empty_period(self, company, user, customer):
        statement = ReportsService.customer_statement(
            company, user, customer.pk, date(2024, 2, 1), date(2024, 2, 29), persist=False,
        )
        assert statement.opening_balance == statement.closing_balance == Decimal("0.00")
        assert statement.lines == []

    def test_reversed_period(self, company, user, customer):
        with pytest.raises(ValidationError):
            ReportsService.customer_statement(company, user, customer.pk, date(2024, 3, 1), date(2024, 2, 1))
