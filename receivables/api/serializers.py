from decimal import Decimal

from rest_framework import serializers

from receivables.models import CustomerPayment, Invoice, InvoiceLineItem, PaymentAllocation


class StrictDecimalField(serializers.DecimalField):
    """DecimalField that refuses binary floats; amounts travel as decimal strings."""

    default_error_messages = {
        "float": "Send amounts as decimal strings, not floating point numbers.",
    }

    def to_internal_value(self, data):
        if isinstance(data, (float, bool)):
            self.fail("float")
        return super().to_internal_value(data)


def money_field(**kwargs):
    return StrictDecimalField(max_digits=15, decimal_places=2, **kwargs)


# ---------------------------------------------------------------------
# INPUT
# ---------------------------------------------------------------------

class LineItemInputSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=500, min_length=1)
    quantity = StrictDecimalField(max_digits=15, decimal_places=4, min_value=Decimal("0"), default=Decimal("1"))
    unit_price = StrictDecimalField(max_digits=15, decimal_places=4, min_value=Decimal("0"))
    discount_percent = StrictDecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"),
                                          max_value=Decimal("100"), default=Decimal("0"))
    tax_percent = StrictDecimalField(max_digits=5, decimal_places=2, min_value=Decimal("0"),
                                     max_value=Decimal("100"), default=Decimal("0"))
    item_code = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")
    revenue_account_ref = serializers.CharField(max_length=100, required=False, allow_blank=True, default="")


class InvoiceCreateSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    lines = LineItemInputSerializer(many=True, allow_empty=False)
    due_date = serializers.DateField()
    invoice_date = serializers.DateField(required=False)
    currency = serializers.CharField(max_length=3, min_length=3, required=False)
    exchange_rate = StrictDecimalField(max_digits=15, decimal_places=6, min_value=Decimal("0.000001"), required=False)
    terms = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    template_id = serializers.IntegerField(required=False, allow_null=True)
    sales_order_ref = serializers.CharField(max_length=100, required=False, allow_blank=True)
    series_id = serializers.IntegerField(required=False, allow_null=True)
    submit = serializers.BooleanField(required=False, default=False)

    def validate(self, attrs):
        invoice_date = attrs.get("invoice_date")
        if invoice_date and attrs["due_date"] < invoice_date:
            raise serializers.ValidationError({"due_date": "Due date cannot be before invoice date"})
        return attrs


class InvoiceUpdateSerializer(serializers.Serializer):
    due_date = serializers.DateField(required=False)
    terms = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    status = serializers.ChoiceField(choices=Invoice.Status.choices, required=False)

    def validate(self, attrs):
        unknown = set(self.initial_data) - set(self.fields)
        if unknown:
            raise serializers.ValidationError({field: "This field cannot be changed" for field in sorted(unknown)})
        return attrs


class AllocationInputSerializer(serializers.Serializer):
    invoice_id = serializers.IntegerField()
    amount = money_field(min_value=Decimal("0.01"))


class PaymentCreateSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    amount = money_field(min_value=Decimal("0.01"))
    method = serializers.ChoiceField(choices=CustomerPayment.Method.choices)
    allocations = AllocationInputSerializer(many=True, required=False)
    payment_date = serializers.DateField(required=False)
    currency = serializers.CharField(max_length=3, min_length=3, required=False)
    exchange_rate = StrictDecimalField(max_digits=15, decimal_places=6, min_value=Decimal("0.000001"), required=False)
    reference = serializers.CharField(max_length=255, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)


class CreditCheckRequestSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    proposed_amount = money_field(min_value=Decimal("0"))
    invoice_id = serializers.IntegerField(required=False, allow_null=True)
    no_limit_policy = serializers.ChoiceField(choices=["reject", "unlimited"], required=False)


class StatementRequestSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    from_date = serializers.DateField()
    to_date = serializers.DateField()
    persist = serializers.BooleanField(required=False, default=True)

    def validate(self, attrs):
        if attrs["from_date"] > attrs["to_date"]:
            raise serializers.ValidationError({"to_date": "End of period cannot be before its start"})
        return attrs


# ---------------------------------------------------------------------
# OUTPUT
# ---------------------------------------------------------------------

class LineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceLineItem
        fields = [
            "id",
            "item_code",
            "description",
            "quantity",
            "unit_price",
            "discount_percent",
            "discount_amount",
            "tax_percent",
            "tax_amount",
            "line_total",
            "revenue_account_ref",
        ]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    line_items = LineItemSerializer(many=True, read_only=True)
    effective_status = serializers.CharField(read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "status",
            "effective_status",
            "invoice_date",
            "due_date",
            "currency",
            "exchange_rate",
            "subtotal",
            "tax_amount",
            "discount_amount",
            "total_amount",
            "paid_amount",
            "outstanding_amount",
            "terms",
            "notes",
            "sales_order_ref",
            "line_items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PaymentAllocationSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source="invoice.invoice_number", read_only=True)

    class Meta:
        model = PaymentAllocation
        fields = ["id", "invoice", "invoice_number", "amount", "allocation_date", "reverses", "reason"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    allocations = PaymentAllocationSerializer(many=True, read_only=True)

    class Meta:
        model = CustomerPayment
        fields = [
            "id",
            "payment_number",
            "customer",
            "payment_date",
            "amount",
            "currency",
            "exchange_rate",
            "payment_method",
            "reference",
            "status",
            "allocated_amount",
            "unallocated_amount",
            "allocations",
        ]
        read_only_fields = fields


class CreditCheckResultSerializer(serializers.Serializer):
    approved = serializers.BooleanField()
    current_outstanding = money_field()
    credit_limit = money_field(allow_null=True)
    proposed_amount = money_field()
    total_exposure = money_field()
    available_credit = money_field(allow_null=True)
    message = serializers.CharField()
    check_id = serializers.IntegerField(allow_null=True)


class AgingLineSerializer(serializers.Serializer):
    invoice_id = serializers.IntegerField()
    invoice_number = serializers.CharField()
    invoice_date = serializers.DateField()
    due_date = serializers.DateField()
    days_overdue = serializers.IntegerField()
    outstanding = money_field()
    bucket = serializers.CharField()


class CustomerAgingSerializer(serializers.Serializer):
    customer_id = serializers.IntegerField()
    customer_name = serializers.CharField()
    current = money_field()
    days_30 = money_field()
    days_60 = money_field()
    days_90 = money_field()
    over_90 = money_field()
    total = money_field()
    invoices = AgingLineSerializer(many=True)


class StatementLineSerializer(serializers.Serializer):
    date = serializers.DateField()
    kind = serializers.CharField()
    reference = serializers.CharField()
    description = serializers.CharField()
    debit = money_field()
    credit = money_field()
    balance = money_field()


class StatementSerializer(serializers.Serializer):
    statement_id = serializers.IntegerField(allow_null=True)
    statement_number = serializers.CharField(allow_null=True)
    customer_id = serializers.IntegerField()
    customer_name = serializers.CharField()
    from_date = serializers.DateField()
    to_date = serializers.DateField()
    opening_balance = money_field()
    closing_balance = money_field()
    total_invoices = money_field()
    total_payments = money_field()
    lines = StatementLineSerializer(many=True)


class DunningItemSerializer(serializers.Serializer):
    invoice_id = serializers.IntegerField()
    invoice_number = serializers.CharField()
    outcome = serializers.CharField()
    level = serializers.CharField(allow_null=True)
    record_id = serializers.IntegerField(allow_null=True)
    message = serializers.CharField(allow_blank=True)


class DunningRunSummarySerializer(serializers.Serializer):
    run_id = serializers.CharField()
    as_of = serializers.DateField()
    processed = serializers.IntegerField()
    created = serializers.IntegerField()
    skipped = serializers.IntegerField()
    failed = serializers.IntegerField()
    cancelled = serializers.BooleanField()
    items = DunningItemSerializer(many=True)
