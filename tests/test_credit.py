from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from receivables.errors import ImmutableField, NotFoundError, ValidationError
from receivables.models import CreditLimitCheck, CustomerCreditLimit
from receivables.services import CreditService, InvoiceService
from tests.factories import CustomerCreditLimitFactory, CustomerFactory


@pytest.mark.django_db
class TestCheckCreditLimit:
    @pytest.fixture
    def exposed_customer(self, customer, make_invoice):
        CustomerCreditLimitFactory(customer=customer, credit_limit=Decimal("1000.00"))
        make_invoice("500.00")
        make_invoice("300.00")
        return customer

    def test_within_limit(self, company, user, exposed_customer):
        result = CreditService.check_credit_limit(company, user, exposed_customer.pk, "150.00")

        assert result.approved
        assert result.current_outstanding == Decimal("800.00")
        assert result.total_exposure == Decimal("950.00")
        assert result.available_credit == Decimal("50.00")
        assert result.credit_limit == Decimal("1000.00")

    def test_over_limit(self, company, user, exposed_customer):
        result = CreditService.check_credit_limit(company, user, exposed_customer.pk, "250.00")

        assert not result.approved
        assert result.total_exposure == Decimal("1050.00")
        assert result.available_credit == Decimal("0.00")
        assert "exceeded" in result.message

    def test_exposure_equal_to_limit_is_approved(self, company, user, exposed_customer):
        result = CreditService.check_credit_limit(company, user, exposed_customer.pk, "200.00")
        assert result.approved
        assert result.available_credit == Decimal("0.00")

    def test_every_check_is_recorded(self, company, user, exposed_customer):
        approved = CreditService.check_credit_limit(company, user, exposed_customer.pk, "150.00")
        rejected = CreditService.check_credit_limit(company, user, exposed_customer.pk, "250.00")

        checks = {check.pk: check for check in CreditLimitCheck.objects.all()}
        assert checks[approved.check_id].is_approved
        assert not checks[rejected.check_id].is_approved
        assert checks[rejected.check_id].policy == CreditLimitCheck.Policy.LIMIT
        assert checks[rejected.check_id].approved_by == user

    def test_payments_reduce_exposure(self, company, user, exposed_customer, make_payment):
        invoice = InvoiceService.list_invoices(company, customer_id=exposed_customer.pk).first()
        make_payment("300.00", [{"invoice_id": invoice.pk, "amount": "300.00"}])

        result = CreditService.check_credit_limit(company, user, exposed_customer.pk, "250.00")
        assert result.approved
        assert result.current_outstanding == Decimal("500.00")

    def test_cancelled_invoices_do_not_count(self, company, user, customer, make_invoice):
        CustomerCreditLimitFactory(customer=customer, credit_limit=Decimal("100.00"))
        invoice = make_invoice("90.00")
        InvoiceService.cancel_invoice(company, user, invoice.pk)

        result = CreditService.check_credit_limit(company, user, customer.pk, "100.00")
        assert result.approved
        assert result.current_outstanding == Decimal("0.00")

    def test_expired_limit_is_ignored(self, company, user, customer):
        today = timezone.localdate()
        CustomerCreditLimitFactory(
            customer=customer, effective_date=today - timedelta(days=60), expiry_date=today - timedelta(days=1),
        )

        result = CreditService.check_credit_limit(company, user, customer.pk, "10.00", no_limit_policy="reject")
        assert not result.approved
        assert result.credit_limit is None

    def test_future_limit_is_ignored(self, company, user, customer):
        CustomerCreditLimitFactory(customer=customer, effective_date=timezone.localdate() + timedelta(days=5))
        assert CreditService.get_active_limit(customer) is None

    def test_negative_amount_rejected(self, company, user, customer):
        with pytest.raises(ValidationError):
            CreditService.check_credit_limit(company, user, customer.pk, "-1.00")
        assert not CreditLimitCheck.objects.exists()

    def test_unknown_customer(self, company, user):
        with pytest.raises(NotFoundError):
            CreditService.check_credit_limit(company, user, CustomerFactory().pk, "1.00")

    def test_checks_are_append_only(self, company, user, exposed_customer):
        result = CreditService.check_credit_limit(company, user, exposed_customer.pk, "150.00")
        check = CreditLimitCheck.objects.get(pk=result.check_id)

        check.approval_notes = "edited"
        with pytest.raises(ImmutableField):
            check.save()


@pytest.mark.django_db
class TestNoLimitPolicy:
    def test_reject_by_default(self, company, user, customer):
        result = CreditService.check_credit_limit(company, user, customer.pk, "10.00")

        assert not result.approved
        assert result.available_credit is None
        assert CreditLimitCheck.objects.get().policy == CreditLimitCheck.Policy.REJECT

    def test_unlimited_from_settings(self, company, user, customer, ledger_settings):
        ledger_settings(NO_CREDIT_LIMIT_POLICY="unlimited")

        result = CreditService.check_credit_limit(company, user, customer.pk, "1000000.00")

        assert result.approved
        assert CreditLimitCheck.objects.get().policy == CreditLimitCheck.Policy.UNLIMITED

    def test_per_call_policy_overrides_settings(self, company, user, customer):
        result = CreditService.check_credit_limit(company, user, customer.pk, "10.00", no_limit_policy="unlimited")
        assert result.approved

    def test_unknown_policy(self, company, user, customer):
        with pytest.raises(ValidationError):
            CreditService.check_credit_limit(company, user, customer.pk, "10.00", no_limit_policy="maybe")


@pytest.mark.django_db
class TestSetCreditLimit:
    def test_replaces_previous_limit(self, company, user, customer):
        first = CreditService.set_credit_limit(company, user, customer.pk, "1000.00")
        second = CreditService.set_credit_limit(company, user, customer.pk, "2500.00", notes="Annual review")

        first.refresh_from_db()
        assert not first.is_active
        assert second.is_active
        assert CustomerCreditLimit.objects.filter(customer=customer, is_active=True).count() == 1
        assert CreditService.get_active_limit(customer) == second

    def test_earlier_checks_keep_their_values(self, company, user, customer):
        CreditService.set_credit_limit(company, user, customer.pk, "100.00")
        result = CreditService.check_credit_limit(company, user, customer.pk, "50.00")

        CreditService.set_credit_limit(company, user, customer.pk, "10.00")

        check = CreditLimitCheck.objects.get(pk=result.check_id)
        assert check.credit_limit == Decimal("100.00")
        assert check.is_approved

    def test_invalid_limit(self, company, user, customer):
        with pytest.raises(ValidationError):
            CreditService.set_credit_limit(company, user, customer.pk, "-5")

        today = timezone.localdate()
        with pytest.raises(ValidationError):
            CreditService.set_credit_limit(company, user, customer.pk, "5", effective_date=today, expiry_date=today)

    def test_deactivate(self, company, user, customer):
        limit = CreditService.set_credit_limit(company, user, customer.pk, "1000.00")

        CreditService.deactivate_credit_limit(company, user, limit.pk)

        assert CreditService.get_active_limit(customer) is None

    def test_deactivate_unknown_limit(self, company, user):
        with pytest.raises(NotFoundError):
            CreditService.deactivate_credit_limit(company, user, 999999)
