from rest_framework import serializers

from quotes.models import (
    Invoice,
    Payment,
    Project,
    Quote,
    QuoteLineItem,
    QuoteMedia,
    QuoteResponse,
)


class QuoteLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = QuoteLineItem
        fields = '__all__'
        read_only_fields = ('quote', 'total_price')


class QuoteMediaSerializer(serializers.ModelSerializer):
    class Meta:
        model = QuoteMedia
        fields = ('id', 'media_url', 'media_type', 'caption', 'category', 'sort_order')


class QuoteSerializer(serializers.ModelSerializer):
    # Writes go through quotes.lifecycle; this serializer only renders.
    line_items = QuoteLineItemSerializer(many=True, read_only=True)
    is_payment_pending = serializers.BooleanField(read_only=True)

    class Meta:
        model = Quote
        exclude = ('user',)


class PublicQuoteSerializer(serializers.ModelSerializer):
    line_items = QuoteLineItemSerializer(many=True, read_only=True)
    media = QuoteMediaSerializer(many=True, read_only=True)
    is_payment_pending = serializers.BooleanField(read_only=True)

    class Meta:
        model = Quote
        fields = (
            'quote_number', 'title', 'description', 'project_type', 'location',
            'customer_name', 'customer_email',
            'subtotal', 'discount_percentage', 'discount_amount', 'discounted_subtotal',
            'tax_rate', 'tax_amount', 'is_manual_tax', 'total',
            'down_payment_percentage', 'milestone_payment_percentage', 'final_payment_percentage',
            'milestone_description', 'estimated_start_date', 'estimated_completion_date',
            'valid_until', 'status', 'scope_description', 'chat_channel_id',
            'sent_at', 'viewed_at', 'responded_at', 'is_payment_pending',
            'line_items', 'media',
        )


class QuoteResponseRequestSerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=QuoteResponse.ACTION_CHOICES)
    customer_name = serializers.CharField(max_length=150, required=False, allow_blank=True, default='')
    customer_email = serializers.EmailField(required=False, allow_blank=True, default='')
    customer_phone = serializers.CharField(max_length=30, required=False, allow_blank=True, default='')
    message = serializers.CharField(required=False, allow_blank=True, default='')


class PaymentConfirmSerializer(serializers.Serializer):
    reference = serializers.CharField(max_length=255)


class InstallmentRequestSerializer(serializers.Serializer):
    invoice_type = serializers.ChoiceField(choices=(Invoice.TYPE_MILESTONE, Invoice.TYPE_FINAL))
    description = serializers.CharField(required=False, allow_blank=True, default='')


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = ('id', 'amount', 'payment_date', 'method', 'status', 'external_payment_reference')


class InvoiceSerializer(serializers.ModelSerializer):
    payments = PaymentSerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = (
            'id', 'invoice_number', 'project', 'quote', 'amount', 'description',
            'issue_date', 'due_date', 'status', 'invoice_type',
            'external_payment_reference', 'paid_at', 'payments',
        )


class ProjectSerializer(serializers.ModelSerializer):
    class Meta:
        model = Project
        fields = (
            'id', 'name', 'description', 'address', 'status', 'total_budget',
            'start_date', 'estimated_completion_date', 'customer_name', 'customer_email',
            'origin_quote',
        )
