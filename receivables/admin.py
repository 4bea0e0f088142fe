from django.contrib import admin

from .models import (
    Company,
    CreditLimitCheck,
    Customer,
    CustomerCreditLimit,
    CustomerPayment,
    CustomerStatement,
    DunningConfiguration,
    DunningLevelConfig,
    DunningRecord,
    Invoice,
    InvoiceActivity,
    InvoiceLineItem,
    InvoiceTemplate,
    NumberingSeries,
    PaymentAllocation,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Append-only ledger rows: visible, never edited through the admin."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class InvoiceLineItemInline(admin.TabularInline):
    model = InvoiceLineItem
    extra = 0
    can_delete = False
    readonly_fields = ('description', 'quantity', 'unit_price', 'discount_percent', 'tax_percent', 'line_total')


@admin.register(Company)
class CompanyAdmin(admin.ModelAdmin):
    list_display = ('name', 'slug', 'base_currency', 'created_at')
    prepopulated_fields = {'slug': ('name',)}


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ('name', 'company', 'email', 'is_active')
    list_filter = ('company', 'is_active')
    search_fields = ('name', 'email')


@admin.register(NumberingSeries)
class NumberingSeriesAdmin(admin.ModelAdmin):
    list_display = ('series_name', 'company', 'document_type', 'prefix', 'current_number', 'pad_length', 'is_default', 'is_active')
    list_filter = ('document_type', 'is_active')
    # The counter only moves through NumberingService.
    readonly_fields = ('current_number',)


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'customer', 'status', 'due_date', 'total_amount', 'paid_amount', 'outstanding_amount')
    list_filter = ('status', 'company')
    search_fields = ('invoice_number', 'customer__name')
    readonly_fields = ('invoice_number', 'subtotal', 'tax_amount', 'discount_amount', 'total_amount',
                       'paid_amount', 'outstanding_amount', 'status', 'version')
    inlines = [InvoiceLineItemInline]


@admin.register(InvoiceActivity)
class InvoiceActivityAdmin(ReadOnlyAdmin):
    list_display = ('invoice', 'action', 'user', 'timestamp')
    list_filter = ('action',)


@admin.register(CustomerPayment)
class CustomerPaymentAdmin(ReadOnlyAdmin):
    list_display = ('payment_number', 'customer', 'payment_date', 'amount', 'allocated_amount', 'unallocated_amount')
    search_fields = ('payment_number', 'reference')


@admin.register(PaymentAllocation)
class PaymentAllocationAdmin(ReadOnlyAdmin):
    list_display = ('payment', 'invoice', 'amount', 'allocation_date', 'reverses')


@admin.register(CustomerCreditLimit)
class CustomerCreditLimitAdmin(admin.ModelAdmin):
    list_display = ('customer', 'credit_limit', 'currency', 'effective_date', 'expiry_date', 'is_active')
    list_filter = ('is_active',)


@admin.register(CreditLimitCheck)
class CreditLimitCheckAdmin(ReadOnlyAdmin):
    list_display = ('customer', 'check_date', 'total_exposure', 'credit_limit', 'is_approved', 'policy')
    list_filter = ('is_approved', 'policy')


class DunningLevelConfigInline(admin.TabularInline):
    model = DunningLevelConfig
    extra = 0


@admin.register(DunningConfiguration)
class DunningConfigurationAdmin(admin.ModelAdmin):
    list_display = ('name', 'company', 'is_default', 'is_active')
    inlines = [DunningLevelConfigInline]


@admin.register(DunningRecord)
class DunningRecordAdmin(ReadOnlyAdmin):
    list_display = ('invoice', 'level', 'due_date', 'dunning_date', 'email_sent', 'sms_sent', 'letter_sent')
    list_filter = ('level', 'email_sent', 'sms_sent', 'letter_sent')


admin.site.register(InvoiceTemplate)
admin.site.register(CustomerStatement, ReadOnlyAdmin)
