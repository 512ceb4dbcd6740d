from django import forms
from django.contrib import admin
from django.core.exceptions import ValidationError

from .lifecycle import validate_payment_percentages
from .line_items import recompute_totals
from .models import Invoice, Payment, Project, Quote, QuoteLineItem, QuoteResponse

PAYMENT_PERCENTAGE_FIELDS = ('down_payment_percentage', 'milestone_payment_percentage', 'final_payment_percentage')


class MoneyAdmin(admin.ModelAdmin):
    """Base admin with currency formatting."""

    @staticmethod
    def format_currency(value):
        if value is None or value == '':
            return "$0.00"
        return "${:,.2f}".format(value)


class QuoteAdminForm(forms.ModelForm):
    class Meta:
        model = Quote
        fields = '__all__'

    def clean(self):
        cleaned_data = super().clean()
        percentages = [cleaned_data.get(name) for name in PAYMENT_PERCENTAGE_FIELDS]
        if None not in percentages:
            try:
                validate_payment_percentages(*percentages)
            except ValidationError as e:
                raise forms.ValidationError(e.message_dict['payment_schedule'])
        return cleaned_data


class FrozenQuoteInline(admin.TabularInline):
    """Inline rows under an accepted quote are view-only."""

    def has_add_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_add_permission(request, obj)

    def has_change_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_change_permission(request, obj)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_delete_permission(request, obj)


class QuoteLineItemInline(FrozenQuoteInline):
    model = QuoteLineItem
    extra = 0
    fields = ('sort_order', 'category', 'description', 'quantity', 'unit', 'unit_price',
              'discount_percentage', 'discount_amount', 'total_price')
    readonly_fields = ('total_price',)


class QuoteResponseInline(FrozenQuoteInline):
    model = QuoteResponse
    extra = 0
    can_delete = False
    readonly_fields = ('action', 'customer_name', 'customer_email', 'message', 'ip_address', 'created_at')
    exclude = ('user_agent',)


def recalculate_totals(modeladmin, request, queryset):
    """Recompute persisted totals from the current line items."""
    recalculated = 0
    skipped = []
    for quote in queryset:
        if quote.is_frozen:
            skipped.append(quote.quote_number)
            continue
        recompute_totals(quote.pk)
        recalculated += 1

    if recalculated:
        modeladmin.message_user(request, f"Recalculated totals for {recalculated} quote(s).")
    if skipped:
        modeladmin.message_user(
            request,
            f"Quotes {', '.join(skipped)} are accepted and were left untouched.",
            level='warning',
        )

recalculate_totals.short_description = "Recalculate totals"


@admin.register(Quote)
class QuoteAdmin(MoneyAdmin):
    form = QuoteAdminForm
    list_display = ('quote_number', 'title', 'customer_name', 'status', 'total_display', 'valid_until', 'created_at')
    list_filter = ('status', 'is_manual_tax')
    search_fields = ('quote_number', 'title', 'customer_name', 'customer_email')
    readonly_fields = ('quote_number', 'subtotal', 'discounted_subtotal', 'total',
                       'sent_at', 'viewed_at', 'responded_at', 'chat_channel_id')
    inlines = (QuoteLineItemInline, QuoteResponseInline)
    actions = [recalculate_totals]

    def total_display(self, obj):
        return self.format_currency(obj.total)
    total_display.short_description = "Total"
    total_display.admin_order_field = 'total'

    def get_readonly_fields(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return [field.name for field in self.model._meta.fields]
        return super().get_readonly_fields(request, obj)

    def has_change_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_change_permission(request, obj)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.is_frozen:
            return False
        return super().has_delete_permission(request, obj)

    def save_formset(self, request, form, formset, change):
        super().save_formset(request, form, formset, change)
        if formset.model is not QuoteLineItem or not form.instance.pk:
            return
        if Quote.objects.filter(pk=form.instance.pk, status=Quote.STATUS_ACCEPTED).exists():
            return
        recompute_totals(form.instance.pk)


@admin.register(Project)
class ProjectAdmin(MoneyAdmin):
    list_display = ('name', 'customer_name', 'status', 'budget_display', 'origin_quote', 'created_at')
    list_filter = ('status',)
    search_fields = ('name', 'customer_name', 'customer_email')

    def budget_display(self, obj):
        return self.format_currency(obj.total_budget)
    budget_display.short_description = "Budget"


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    can_delete = False
    readonly_fields = ('amount', 'payment_date', 'method', 'status', 'external_payment_reference', 'charge_id')


@admin.register(Invoice)
class InvoiceAdmin(MoneyAdmin):
    list_display = ('invoice_number', 'project', 'invoice_type', 'status', 'amount_display', 'paid_at')
    list_filter = ('status', 'invoice_type')
    search_fields = ('invoice_number', 'external_payment_reference', 'customer_email')
    readonly_fields = ('external_payment_reference', 'authorization_id', 'paid_at')
    inlines = (PaymentInline,)

    def amount_display(self, obj):
        return self.format_currency(obj.amount)
    amount_display.short_description = "Amount"
    amount_display.admin_order_field = 'amount'


@admin.register(Payment)
class PaymentAdmin(MoneyAdmin):
    list_display = ('invoice', 'amount_display', 'method', 'status', 'external_payment_reference', 'payment_date')
    search_fields = ('external_payment_reference', 'invoice__invoice_number')

    def amount_display(self, obj):
        return self.format_currency(obj.amount)
    amount_display.short_description = "Amount"


@admin.register(QuoteResponse)
class QuoteResponseAdmin(admin.ModelAdmin):
    list_display = ('quote', 'action', 'customer_name', 'ip_address', 'created_at')
    list_filter = ('action',)
