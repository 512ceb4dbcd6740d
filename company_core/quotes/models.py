import secrets
import time
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.contrib.auth.models import User
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.utils import timezone

from .ledger import ZERO, ensure_decimal, line_item_total, quantize_money


MONEY = dict(max_digits=12, decimal_places=2)
PERCENT_VALIDATORS = [MinValueValidator(0), MaxValueValidator(100)]


def default_tax_rate():
    return ensure_decimal(getattr(settings, 'QUOTE_DEFAULT_TAX_RATE', '10.60'))


def default_valid_until():
    days = getattr(settings, 'QUOTE_VALIDITY_DAYS', 30)
    return timezone.now() + timedelta(days=days)


def generate_quote_number():
    return f"QUO-{int(time.time() * 1000)}{secrets.randbelow(100):02d}"


def generate_access_token():
    return secrets.token_hex(32)


class Quote(models.Model):
    STATUS_DRAFT = 'draft'
    STATUS_SENT = 'sent'
    STATUS_VIEWED = 'viewed'
    STATUS_ACCEPTED = 'accepted'
    STATUS_DECLINED = 'declined'
    STATUS_CHOICES = [
        (STATUS_DRAFT, 'Draft'),
        (STATUS_SENT, 'Sent'),
        (STATUS_VIEWED, 'Viewed'),
        (STATUS_ACCEPTED, 'Accepted'),
        (STATUS_DECLINED, 'Declined'),
    ]
    TERMINAL_STATUSES = (STATUS_ACCEPTED, STATUS_DECLINED)
    AWAITING_RESPONSE_STATUSES = (STATUS_SENT, STATUS_VIEWED)

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='quotes')
    quote_number = models.CharField(max_length=32, unique=True, editable=False, default=generate_quote_number)
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    project_type = models.CharField(max_length=100, blank=True, default='')
    location = models.CharField(max_length=255, blank=True, default='')

    customer_name = models.CharField(max_length=150, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    customer_phone = models.CharField(max_length=30, blank=True, default='')
    customer_address = models.TextField(blank=True, default='')

    subtotal = models.DecimalField(**MONEY, default=ZERO, editable=False)
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO, validators=PERCENT_VALIDATORS)
    discount_amount = models.DecimalField(**MONEY, default=ZERO, validators=[MinValueValidator(0)])
    discounted_subtotal = models.DecimalField(**MONEY, default=ZERO, editable=False)
    # Legacy rows hold either a decimal (0.106) or a percent (10.60); see ledger.TaxRate.
    tax_rate = models.DecimalField(max_digits=8, decimal_places=4, default=default_tax_rate, validators=[MinValueValidator(0)])
    tax_amount = models.DecimalField(**MONEY, default=ZERO, validators=[MinValueValidator(0)])
    is_manual_tax = models.BooleanField(default=False)
    total = models.DecimalField(**MONEY, default=ZERO, editable=False)

    down_payment_percentage = models.PositiveSmallIntegerField(default=40, validators=PERCENT_VALIDATORS)
    milestone_payment_percentage = models.PositiveSmallIntegerField(default=40, validators=PERCENT_VALIDATORS)
    final_payment_percentage = models.PositiveSmallIntegerField(default=20, validators=PERCENT_VALIDATORS)
    milestone_description = models.TextField(blank=True, default='')

    estimated_start_date = models.DateField(null=True, blank=True)
    estimated_completion_date = models.DateField(null=True, blank=True)
    valid_until = models.DateTimeField(default=default_valid_until)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_DRAFT, db_index=True)
    project_notes = models.TextField(blank=True, default='')
    scope_description = models.TextField(blank=True, default='')
    chat_channel_id = models.CharField(max_length=128, blank=True, default='')

    sent_at = models.DateTimeField(null=True, blank=True)
    viewed_at = models.DateTimeField(null=True, blank=True)
    responded_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Quote"
        verbose_name_plural = "Quotes"

    def __str__(self):
        return f'{self.quote_number} - {self.title} - ${self.total:.2f}'

    @property
    def is_frozen(self):
        return self.status == self.STATUS_ACCEPTED

    @property
    def is_payment_pending(self):
        """Customer accepted but the down payment has not been confirmed yet."""
        return self.responded_at is not None and self.status in self.AWAITING_RESPONSE_STATUSES

    def is_expired(self, at=None):
        at = at or timezone.now()
        return bool(self.valid_until and self.valid_until < at)

    def payment_percentages(self):
        return (
            self.down_payment_percentage,
            self.milestone_payment_percentage,
            self.final_payment_percentage,
        )

    def recalculate_totals(self):
        from .line_items import recompute_totals
        recompute_totals(self.pk)
        self.refresh_from_db()


class QuoteLineItem(models.Model):
    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name='line_items')
    category = models.CharField(max_length=50)
    description = models.TextField()
    quantity = models.DecimalField(**MONEY, default=Decimal('1.00'), validators=[MinValueValidator(0)])
    unit = models.CharField(max_length=30, default='each')
    unit_price = models.DecimalField(**MONEY, validators=[MinValueValidator(0)])
    discount_percentage = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO, validators=PERCENT_VALIDATORS)
    discount_amount = models.DecimalField(**MONEY, default=ZERO, validators=[MinValueValidator(0)])
    total_price = models.DecimalField(**MONEY, default=ZERO, editable=False)
    sort_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['sort_order', 'id']
        verbose_name = "Quote Line Item"
        verbose_name_plural = "Quote Line Items"

    def compute_total_price(self):
        return line_item_total(
            self.quantity,
            self.unit_price,
            self.discount_percentage,
            self.discount_amount,
        )

    def save(self, *args, **kwargs):
        self.total_price = self.compute_total_price()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and 'total_price' not in update_fields:
            kwargs['update_fields'] = list(update_fields) + ['total_price']
        super().save(*args, **kwargs)

    def __str__(self):
        return f'{self.quote.quote_number} - {self.description[:40]} - ${self.total_price:.2f}'


class QuoteMedia(models.Model):
    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name='media')
    media_url = models.URLField(max_length=500)
    media_type = models.CharField(max_length=20, default='image')
    caption = models.CharField(max_length=255, blank=True, default='')
    category = models.CharField(max_length=50, blank=True, default='')
    sort_order = models.PositiveIntegerField(default=0)
    uploaded_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['sort_order', 'id']

    def __str__(self):
        return f'{self.quote.quote_number} - {self.media_type} {self.pk}'


class QuoteResponse(models.Model):
    ACTION_ACCEPTED = 'accepted'
    ACTION_DECLINED = 'declined'
    ACTION_CHOICES = [
        (ACTION_ACCEPTED, 'Accepted'),
        (ACTION_DECLINED, 'Declined'),
    ]

    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name='responses')
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)
    customer_name = models.CharField(max_length=150, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    message = models.TextField(blank=True, default='')
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=500, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']

    def __str__(self):
        return f'{self.quote.quote_number} {self.action} by {self.customer_name or "customer"}'


class QuoteAccessToken(models.Model):
    quote = models.ForeignKey(Quote, on_delete=models.CASCADE, related_name='access_tokens')
    token = models.CharField(max_length=64, unique=True, default=generate_access_token, editable=False)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    def is_valid(self, at=None):
        return self.expires_at >= (at or timezone.now())

    def __str__(self):
        return f'Access token for {self.quote.quote_number}'


class Project(models.Model):
    STATUS_PLANNING = 'planning'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_ON_HOLD = 'on_hold'
    STATUS_COMPLETED = 'completed'
    STATUS_CHOICES = [
        (STATUS_PLANNING, 'Planning'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_ON_HOLD, 'On hold'),
        (STATUS_COMPLETED, 'Completed'),
    ]

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='projects')
    # One project per accepted quote.
    origin_quote = models.OneToOneField(
        Quote,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='project',
    )
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    address = models.TextField(blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PLANNING)
    total_budget = models.DecimalField(**MONEY, default=ZERO)
    start_date = models.DateField(null=True, blank=True)
    estimated_completion_date = models.DateField(null=True, blank=True)
    customer_name = models.CharField(max_length=150, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    customer_phone = models.CharField(max_length=30, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class Invoice(models.Model):
    STATUS_PENDING = 'pending'
    STATUS_PAID = 'paid'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_PAID, 'Paid'),
    ]

    TYPE_DOWN_PAYMENT = 'down_payment'
    TYPE_MILESTONE = 'milestone'
    TYPE_FINAL = 'final'
    TYPE_CHOICES = [
        (TYPE_DOWN_PAYMENT, 'Down payment'),
        (TYPE_MILESTONE, 'Milestone payment'),
        (TYPE_FINAL, 'Final payment'),
    ]

    project = models.ForeignKey(Project, on_delete=models.PROTECT, related_name='invoices')
    quote = models.ForeignKey(Quote, on_delete=models.PROTECT, null=True, blank=True, related_name='invoices')
    invoice_number = models.CharField(max_length=32, unique=True)
    amount = models.DecimalField(**MONEY)
    description = models.TextField(blank=True, default='')
    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(default=timezone.localdate)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    invoice_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    external_payment_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor payment reference that settled this invoice.",
    )
    authorization_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor authorization requested for this invoice while unpaid.",
    )
    customer_name = models.CharField(max_length=150, blank=True, default='')
    customer_email = models.EmailField(blank=True, default='')
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['external_payment_reference'],
                name='unique_invoice_payment_reference',
                condition=models.Q(external_payment_reference__isnull=False),
            ),
        ]

    def total_paid(self):
        total = self.payments.aggregate(total=models.Sum('amount'))['total']
        return quantize_money(total or ZERO)

    def balance_due(self):
        return quantize_money((self.amount or ZERO) - self.total_paid())

    def __str__(self):
        return f'{self.invoice_number} ({self.get_invoice_type_display()}) - ${self.amount:.2f}'


class Payment(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='payments')
    amount = models.DecimalField(**MONEY)
    payment_date = models.DateTimeField(null=True, blank=True)
    method = models.CharField(max_length=50, default='stripe')
    status = models.CharField(max_length=20, default='succeeded')
    external_payment_reference = models.CharField(max_length=255, null=True, blank=True)
    charge_id = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['external_payment_reference'],
                name='unique_payment_reference',
                condition=models.Q(external_payment_reference__isnull=False),
            ),
        ]

    def save(self, *args, **kwargs):
        if not self.payment_date:
            self.payment_date = timezone.now()
        super().save(*args, **kwargs)

    def __str__(self):
        return f'Payment of ${self.amount} for Invoice {self.invoice.invoice_number}'
