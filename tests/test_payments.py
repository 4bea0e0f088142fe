from datetime import date
from decimal import Decimal
from unittest import mock

import pytest
from django.db import OperationalError
from django.db.models import F

from receivables.errors import (
    ConcurrencyConflict,
    ImmutableField,
    InvalidTransition,
    InvariantViolation,
    NotFoundError,
    OverAllocation,
    StaleInvoiceState,
    ValidationError,
)
from receivables.models import CustomerPayment, Invoice, PaymentAllocation
from receivables.services import PaymentService
from tests.factories import CustomerFactory


def allocation(invoice, amount):
    return {"invoice_id": invoice.pk, "amount": amount}


@pytest.mark.django_db
class TestRecordPayment:
    def test_full_payment_marks_invoice_paid(self, make_invoice, make_payment):
        invoice = make_invoice("270.00")

        payment = make_payment("270.00", [allocation(invoice, "270.00")])

        invoice.refresh_from_db()
        payment.refresh_from_db()
        assert invoice.paid_amount == Decimal("270.00")
        assert invoice.outstanding_amount == Decimal("0.00")
        assert invoice.status == Invoice.Status.PAID
        assert payment.allocated_amount == Decimal("270.00")
        assert payment.unallocated_amount == Decimal("0.00")
        assert payment.payment_number == "PAY-000001"

    def test_unallocated_payment(self, make_payment):
        payment = make_payment("50.00")
        assert payment.allocated_amount == Decimal("0.00")
        assert payment.unallocated_amount == Decimal("50.00")
        assert payment.status == CustomerPayment.Status.COMPLETED

    def test_partial_payment(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")

        make_payment("30.00", [allocation(invoice, "30.00")])

        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.PARTIALLY_PAID
        assert invoice.outstanding_amount == Decimal("70.00")

    def test_over_allocation_persists_nothing(self, make_invoice, make_payment):
        invoice = make_invoice("500.00")

        with pytest.raises(OverAllocation):
            make_payment("300.00", [allocation(invoice, "400.00")])

        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("0.00")
        assert invoice.status == Invoice.Status.SUBMITTED
        assert not CustomerPayment.objects.exists()
        assert not PaymentAllocation.objects.exists()

    def test_allocation_above_outstanding_rejected(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")

        with pytest.raises(OverAllocation):
            make_payment("150.00", [allocation(invoice, "150.00")])

        invoice.refresh_from_db()
        assert invoice.outstanding_amount == Decimal("100.00")

    def test_payment_across_invoices(self, make_invoice, make_payment):
        first = make_invoice("100.00")
        second = make_invoice("80.00")

        payment = make_payment("150.00", [allocation(first, "100.00"), allocation(second, "50.00")])

        first.refresh_from_db()
        second.refresh_from_db()
        assert first.status == Invoice.Status.PAID
        assert second.status == Invoice.Status.PARTIALLY_PAID
        assert second.outstanding_amount == Decimal("30.00")
        assert payment.allocations.count() == 2
        assert payment.unallocated_amount == Decimal("0.00")

    def test_repeated_invoice_is_merged(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")

        payment = make_payment("60.00", [allocation(invoice, "25.00"), allocation(invoice, "35.00")])

        assert payment.allocations.get().amount == Decimal("60.00")

    @pytest.mark.parametrize("amount", ["0", "-5.00", 12.5, "abc"])
    def test_invalid_amount(self, make_payment, amount):
        with pytest.raises(ValidationError):
            make_payment(amount)
        assert not CustomerPayment.objects.exists()

    def test_unknown_method(self, company, user, customer):
        with pytest.raises(ValidationError) as exc_info:
            PaymentService.record_payment(company, user, customer.pk, "10.00", "BARTER")
        assert "method" in exc_info.value.errors

    def test_invalid_allocation_entry(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        with pytest.raises(ValidationError) as exc_info:
            make_payment("10.00", [allocation(invoice, "-1.00"), {"amount": "5.00"}])

        assert set(exc_info.value.errors) == {"allocations.0.amount", "allocations.1.invoice_id"}

    def test_sub_cent_amounts_are_rejected(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")

        with pytest.raises(ValidationError) as exc_info:
            make_payment("100.005")
        assert "amount" in exc_info.value.errors

        with pytest.raises(ValidationError) as exc_info:
            make_payment("100.00", [allocation(invoice, "99.995")])
        assert set(exc_info.value.errors) == {"allocations.0.amount"}
        assert not CustomerPayment.objects.exists()

    def test_invoice_of_other_customer_rejected(self, company, make_invoice, make_payment):
        other = CustomerFactory(company=company)
        invoice = make_invoice("100.00", customer_obj=other)

        with pytest.raises(InvariantViolation):
            make_payment("100.00", [allocation(invoice, "100.00")])
        assert not CustomerPayment.objects.exists()

    def test_draft_invoice_cannot_receive_payment(self, make_invoice, make_payment):
        invoice = make_invoice("100.00", submit=False)

        with pytest.raises(InvalidTransition):
            make_payment("100.00", [allocation(invoice, "100.00")])

    def test_unknown_invoice(self, make_payment):
        with pytest.raises(NotFoundError):
            make_payment("10.00", [{"invoice_id": 999999, "amount": "10.00"}])


@pytest.mark.django_db
class TestAllocatePayment:
    def test_allocate_later(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")

        payment = PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "60.00")])

        assert payment.allocated_amount == Decimal("60.00")
        assert payment.unallocated_amount == Decimal("40.00")
        invoice.refresh_from_db()
        assert invoice.outstanding_amount == Decimal("40.00")

    def test_over_allocation_of_recorded_payment(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("500.00")
        payment = make_payment("300.00")

        with pytest.raises(OverAllocation):
            PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "400.00")])

        payment.refresh_from_db()
        invoice.refresh_from_db()
        assert payment.unallocated_amount == Decimal("300.00")
        assert invoice.outstanding_amount == Decimal("500.00")
        assert not PaymentAllocation.objects.exists()

    def test_failure_on_one_invoice_rolls_back_all(self, company, user, make_invoice, make_payment):
        first = make_invoice("100.00")
        second = make_invoice("20.00")
        payment = make_payment("200.00")

        with pytest.raises(OverAllocation):
            PaymentService.allocate_payment(
                company, user, payment.pk, [allocation(first, "100.00"), allocation(second, "50.00")],
            )

        first.refresh_from_db()
        assert first.paid_amount == Decimal("0.00")
        assert not PaymentAllocation.objects.exists()

    def test_empty_allocation_list_is_a_no_op(self, company, user, make_payment):
        payment = make_payment("100.00")

        result = PaymentService.allocate_payment(company, user, payment.pk, [])

        assert result.pk == payment.pk
        assert result.version == payment.version
        assert result.unallocated_amount == Decimal("100.00")

    def test_cancelled_payment_cannot_be_allocated(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        CustomerPayment.objects.filter(pk=payment.pk).update(status=CustomerPayment.Status.CANCELLED)

        with pytest.raises(InvalidTransition):
            PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "10.00")])

    def test_payment_of_another_company_is_not_found(self, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        other = CustomerFactory().company

        with pytest.raises(NotFoundError):
            PaymentService.allocate_payment(other, user, payment.pk, [allocation(invoice, "10.00")])

    def test_paid_invoice_rejects_further_allocation(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("50.00")
        make_payment("50.00", [allocation(invoice, "50.00")])
        spare = make_payment("10.00")

        with pytest.raises(InvalidTransition):
            PaymentService.allocate_payment(company, user, spare.pk, [allocation(invoice, "10.00")])


@pytest.mark.django_db
class TestAutoAllocate:
    def test_oldest_due_date_first(self, company, user, make_invoice, make_payment):
        later = make_invoice("100.00", invoice_date=date(2024, 2, 1), due_date=date(2024, 3, 1))
        older = make_invoice("100.00", invoice_date=date(2024, 1, 1), due_date=date(2024, 2, 1))
        payment = make_payment("150.00")

        payment = PaymentService.auto_allocate_payment(company, user, payment.pk)

        older.refresh_from_db()
        later.refresh_from_db()
        assert older.status == Invoice.Status.PAID
        assert later.outstanding_amount == Decimal("50.00")
        assert payment.unallocated_amount == Decimal("0.00")

    def test_leftover_stays_unallocated(self, company, user, make_invoice, make_payment):
        make_invoice("40.00")
        payment = make_payment("100.00")

        payment = PaymentService.auto_allocate_payment(company, user, payment.pk)

        assert payment.allocated_amount == Decimal("40.00")
        assert payment.unallocated_amount == Decimal("60.00")

    def test_skips_other_customers_and_drafts(self, company, user, make_invoice, make_payment):
        make_invoice("40.00", submit=False)
        make_invoice("40.00", customer_obj=CustomerFactory(company=company))
        payment = make_payment("100.00")

        payment = PaymentService.auto_allocate_payment(company, user, payment.pk)

        assert payment.unallocated_amount == Decimal("100.00")
        assert not PaymentAllocation.objects.exists()


@pytest.mark.django_db
class TestReverseAllocation:
    def test_reversal_restores_balances(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00", [allocation(invoice, "100.00")])
        original = payment.allocations.get()

        reversal = PaymentService.reverse_allocation(company, user, original.pk, reason="Bounced")

        invoice.refresh_from_db()
        payment.refresh_from_db()
        assert reversal.amount == Decimal("-100.00")
        assert reversal.reverses == original
        assert invoice.status == Invoice.Status.SUBMITTED
        assert invoice.outstanding_amount == Decimal("100.00")
        assert payment.unallocated_amount == Decimal("100.00")
        assert PaymentAllocation.objects.count() == 2

    def test_partial_reversal_status(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        make_payment("60.00", [allocation(invoice, "60.00")])
        payment = make_payment("40.00", [allocation(invoice, "40.00")])

        PaymentService.reverse_allocation(company, user, payment.allocations.get().pk)

        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.PARTIALLY_PAID
        assert invoice.paid_amount == Decimal("60.00")

    def test_cannot_reverse_twice(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00", [allocation(invoice, "100.00")])
        original = payment.allocations.get()
        PaymentService.reverse_allocation(company, user, original.pk)

        with pytest.raises(InvariantViolation):
            PaymentService.reverse_allocation(company, user, original.pk)

    def test_cannot_reverse_a_reversal(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00", [allocation(invoice, "100.00")])
        reversal = PaymentService.reverse_allocation(company, user, payment.allocations.get().pk)

        with pytest.raises(InvariantViolation):
            PaymentService.reverse_allocation(company, user, reversal.pk)

    def test_reversed_invoice_can_be_cancelled(self, company, user, make_invoice, make_payment):
        from receivables.services import InvoiceService

        invoice = make_invoice("100.00")
        payment = make_payment("100.00", [allocation(invoice, "100.00")])
        PaymentService.reverse_allocation(company, user, payment.allocations.get().pk)

        invoice = InvoiceService.cancel_invoice(company, user, invoice.pk)
        assert invoice.status == Invoice.Status.CANCELLED

    def test_allocation_rows_are_append_only(self, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00", [allocation(invoice, "100.00")])
        row = payment.allocations.get()

        row.amount = Decimal("1.00")
        with pytest.raises(ImmutableField):
            row.save()
        with pytest.raises(ImmutableField):
            row.delete()

    def test_invoice_with_allocations_cannot_be_deleted(self, make_invoice, make_payment):
        from receivables.errors import HasPayments

        invoice = make_invoice("100.00")
        make_payment("10.00", [allocation(invoice, "10.00")])

        with pytest.raises(HasPayments):
            invoice.delete()


@pytest.mark.django_db(transaction=True)
class TestRetry:
    @pytest.fixture(autouse=True)
    def no_backoff(self, ledger_settings):
        ledger_settings(RETRY_BACKOFF_SECONDS=0, ALLOCATION_MAX_RETRIES=2)

    def test_stale_invoice_state_is_retried(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        real_write = PaymentService._write_invoice_amounts
        calls = []

        def flaky(target, delta):
            calls.append(target.pk)
            if len(calls) == 1:
                raise StaleInvoiceState(invoice_id=target.pk)
            return real_write(target, delta)

        with mock.patch.object(PaymentService, "_write_invoice_amounts", side_effect=flaky):
            PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "100.00")])

        invoice.refresh_from_db()
        assert len(calls) == 2
        assert invoice.status == Invoice.Status.PAID
        assert PaymentAllocation.objects.count() == 1

    def test_concurrent_invoice_write_is_detected_by_version(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        version = Invoice.objects.get(pk=invoice.pk).version
        real_write = PaymentService._write_invoice_amounts
        calls = []

        # Another writer moves the invoice on after it was read and locked here.
        def concurrent_write(target, delta):
            calls.append(target.pk)
            if len(calls) == 1:
                Invoice.objects.filter(pk=target.pk).update(version=F("version") + 1)
            return real_write(target, delta)

        with mock.patch.object(PaymentService, "_write_invoice_amounts", side_effect=concurrent_write):
            PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "100.00")])

        invoice.refresh_from_db()
        payment.refresh_from_db()
        assert len(calls) == 2
        assert invoice.paid_amount == Decimal("100.00")
        assert invoice.outstanding_amount == Decimal("0.00")
        assert invoice.version == version + 1
        assert payment.allocated_amount == Decimal("100.00")
        assert PaymentAllocation.objects.count() == 1

    def test_stale_invoice_copy_is_refused(self, make_invoice):
        invoice = make_invoice("100.00")
        stale = Invoice.objects.get(pk=invoice.pk)
        PaymentService._write_invoice_amounts(Invoice.objects.get(pk=invoice.pk), Decimal("40.00"))

        with pytest.raises(StaleInvoiceState):
            PaymentService._write_invoice_amounts(stale, Decimal("60.00"))

        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("40.00")

    def test_gives_up_after_max_retries(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        stale = StaleInvoiceState(invoice_id=invoice.pk)

        with mock.patch.object(PaymentService, "_write_invoice_amounts", side_effect=stale) as write:
            with pytest.raises(ConcurrencyConflict):
                PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "100.00")])

        assert write.call_count == 3
        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("0.00")
        assert not PaymentAllocation.objects.exists()

    def test_lock_errors_are_retried(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")
        real_write = PaymentService._write_invoice_amounts
        calls = []

        def locked(target, delta):
            calls.append(target.pk)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return real_write(target, delta)

        with mock.patch.object(PaymentService, "_write_invoice_amounts", side_effect=locked):
            PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "100.00")])

        invoice.refresh_from_db()
        assert invoice.status == Invoice.Status.PAID

    def test_other_database_errors_are_not_retried(self, company, user, make_invoice, make_payment):
        invoice = make_invoice("100.00")
        payment = make_payment("100.00")

        with mock.patch.object(PaymentService, "_write_invoice_amounts",
                               side_effect=OperationalError("no such column")) as write:
            with pytest.raises(OperationalError):
                PaymentService.allocate_payment(company, user, payment.pk, [allocation(invoice, "100.00")])

        assert write.call_count == 1


@pytest.mark.django_db
class TestLedgerProperties:
    def test_invoice_and_payment_balances_hold_after_mixed_operations(self, company, user, make_invoice, make_payment):
        first = make_invoice("270.00")
        second = make_invoice("270.00")
        make_payment("270.00", [allocation(first, "270.00")])

        with pytest.raises(OverAllocation):
            make_payment("300.00", [allocation(second, "400.00")])

        spare = make_payment("300.00", [allocation(second, "100.00")])
        PaymentService.auto_allocate_payment(company, user, spare.pk)
        PaymentService.reverse_allocation(company, user, spare.allocations.order_by('id').first().pk)

        for invoice in Invoice.objects.all():
            assert invoice.total_amount == invoice.subtotal + invoice.tax_amount - invoice.discount_amount
            assert invoice.outstanding_amount == invoice.total_amount - invoice.paid_amount
            applied = sum((row.amount for row in invoice.allocations.all()), Decimal("0"))
            assert applied == invoice.paid_amount
            assert applied <= invoice.total_amount
        for payment in CustomerPayment.objects.all():
            assert payment.amount == payment.allocated_amount + payment.unallocated_amount

        second.refresh_from_db()
        assert second.paid_amount == Decimal("170.00")
        assert second.status == Invoice.Status.PARTIALLY_PAID
