"""Quote status transitions and the staff-side quote edits that go with them.

draft -> sent -> viewed -> accepted | declined

``accepted`` is only ever written by the payment coordinator once the down
payment is confirmed; the customer's "accept" click leaves the quote in
sent/viewed with ``responded_at`` set until then.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .chat import open_quote_conversation
from .exceptions import QuoteStateError
from .ledger import HUNDRED, TAX_UNIT_DECIMAL, TAX_UNIT_PERCENT, TaxRate
from .line_items import parse_bool, parse_decimal, parse_money, recompute_totals
from .models import (
    Quote,
    QuoteAccessToken,
    QuoteLineItem,
    QuoteMedia,
    QuoteResponse,
)
from .notifications import notify_quote_sent

logger = logging.getLogger(__name__)

DETAIL_FIELDS = (
    'title',
    'description',
    'project_type',
    'location',
    'customer_name',
    'customer_email',
    'customer_phone',
    'customer_address',
    'down_payment_percentage',
    'milestone_payment_percentage',
    'final_payment_percentage',
    'milestone_description',
    'estimated_start_date',
    'estimated_completion_date',
    'valid_until',
    'project_notes',
    'scope_description',
)
FINANCIAL_FIELDS = (
    'discount_percentage',
    'discount_amount',
    'tax_rate',
    'tax_rate_unit',
    'tax_amount',
    'is_manual_tax',
)
RATE_PLACES = Decimal('0.0001')


def validate_payment_percentages(down, milestone, final):
    """The three installment percentages must add up to exactly 100."""
    total = sum(int(p or 0) for p in (down, milestone, final))
    if total != 100:
        raise ValidationError({
            'payment_schedule': [
                f"Down payment, milestone and final percentages must total 100 (got {total})."
            ],
        })


def _reject_unknown(fields, allowed):
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise ValidationError({name: ["Unknown quote field."] for name in unknown})


def _clean_financials(quote, fields):
    """Parse financial overrides into model values. Raises ValidationError keyed by field."""
    errors = {}
    cleaned = {}

    if 'discount_percentage' in fields:
        value = parse_money('discount_percentage', fields['discount_percentage'], errors, maximum=HUNDRED)
        if value is not None:
            cleaned['discount_percentage'] = value
    if 'discount_amount' in fields:
        value = parse_money('discount_amount', fields['discount_amount'], errors)
        if value is not None:
            cleaned['discount_amount'] = value
    if 'tax_amount' in fields:
        value = parse_money('tax_amount', fields['tax_amount'], errors)
        if value is not None:
            cleaned['tax_amount'] = value
    if 'is_manual_tax' in fields:
        value = parse_bool('is_manual_tax', fields['is_manual_tax'], errors)
        if value is not None:
            cleaned['is_manual_tax'] = value

    if 'tax_rate' in fields:
        unit = fields.get('tax_rate_unit') or TAX_UNIT_PERCENT
        raw_rate = parse_decimal('tax_rate', fields['tax_rate'], errors, maximum=HUNDRED)
        if unit not in (TAX_UNIT_DECIMAL, TAX_UNIT_PERCENT):
            errors.setdefault('tax_rate_unit', []).append("Must be 'decimal' or 'percent'.")
        elif raw_rate is not None:
            percent = TaxRate(raw_rate, unit).as_percent().quantize(RATE_PLACES, rounding=ROUND_HALF_UP)
            # Stored rates at or below 1 are read back as decimals, so a percent
            # in (0, 1] would silently become a 100x larger rate.
            if Decimal('0') < percent <= Decimal('1'):
                errors.setdefault('tax_rate', []).append(
                    "Rates of 1% or less cannot be stored unambiguously; enter a manual tax amount instead."
                )
            elif percent > HUNDRED:
                errors.setdefault('tax_rate', []).append("Must not exceed 100%.")
            else:
                cleaned['tax_rate'] = percent

    if errors:
        raise ValidationError(errors)

    percentage = cleaned.get('discount_percentage', quote.discount_percentage)
    flat = cleaned.get('discount_amount', quote.discount_amount)
    if percentage <= 0 and flat > quote.subtotal:
        raise ValidationError({
            'discount_amount': [f"Discount {flat} exceeds the quote subtotal {quote.subtotal}."],
        })
    return cleaned


def _apply_details(quote, fields):
    for name in DETAIL_FIELDS:
        if name in fields:
            setattr(quote, name, fields[name])
    quote.full_clean(exclude=['user'])
    validate_payment_percentages(*quote.payment_percentages())


def _ensure_editable(quote):
    if quote.is_frozen:
        raise QuoteStateError({'status': [f"Quote {quote.quote_number} is accepted and can no longer be edited."]})


def create_quote(user, fields):
    _reject_unknown(fields, DETAIL_FIELDS + FINANCIAL_FIELDS)
    with transaction.atomic():
        quote = Quote(user=user)
        _apply_details(quote, fields)
        financials = _clean_financials(quote, {k: v for k, v in fields.items() if k in FINANCIAL_FIELDS})
        for name, value in financials.items():
            setattr(quote, name, value)
        quote.save()
        recompute_totals(quote.pk)
    quote.refresh_from_db()
    logger.info("Quote %s created by %s", quote.quote_number, user.username)
    return quote


def update_quote(quote_id, fields):
    _reject_unknown(fields, DETAIL_FIELDS + FINANCIAL_FIELDS)
    with transaction.atomic():
        quote = Quote.objects.select_for_update().get(pk=quote_id)
        _ensure_editable(quote)
        _apply_details(quote, fields)
        financials = _clean_financials(quote, {k: v for k, v in fields.items() if k in FINANCIAL_FIELDS})
        for name, value in financials.items():
            setattr(quote, name, value)
        quote.save()
        recompute_totals(quote.pk)
    quote.refresh_from_db()
    return quote


def update_quote_financials(quote_id, overrides):
    _reject_unknown(overrides, FINANCIAL_FIELDS)
    with transaction.atomic():
        quote = Quote.objects.select_for_update().get(pk=quote_id)
        _ensure_editable(quote)
        cleaned = _clean_financials(quote, overrides)
        for name, value in cleaned.items():
            setattr(quote, name, value)
        if cleaned:
            quote.save(update_fields=list(cleaned) + ['updated_at'])
        recompute_totals(quote.pk)
    quote.refresh_from_db()
    return quote


def delete_quote(quote_id):
    """Delete a quote and its children in a fixed order, all or nothing."""
    with transaction.atomic():
        quote = Quote.objects.select_for_update().get(pk=quote_id)
        if quote.is_frozen or quote.invoices.exists() or hasattr(quote, 'project'):
            raise QuoteStateError({'status': [f"Quote {quote.quote_number} has financial records and cannot be deleted."]})
        QuoteLineItem.objects.filter(quote=quote).delete()
        QuoteResponse.objects.filter(quote=quote).delete()
        QuoteMedia.objects.filter(quote=quote).delete()
        QuoteAccessToken.objects.filter(quote=quote).delete()
        quote_number = quote.quote_number
        quote.delete()
    logger.info("Quote %s deleted", quote_number)


def transition_to_sent(quote_id):
    """Staff send or re-send. Notification and chat are best-effort."""
    now = timezone.now()
    with transaction.atomic():
        quote = Quote.objects.select_for_update().select_related('user').get(pk=quote_id)
        if quote.status == Quote.STATUS_ACCEPTED:
            raise QuoteStateError({'status': ["Accepted quotes cannot be re-sent."]})
        errors = {}
        if not quote.customer_name.strip():
            errors['customer_name'] = ["Customer name is required before sending."]
        if not quote.customer_email.strip():
            errors['customer_email'] = ["Customer email is required before sending."]
        if errors:
            raise ValidationError(errors)
        if quote.is_expired(now):
            raise ValidationError({'valid_until': ["Quote validity has passed; extend it before sending."]})

        previous_status = quote.status
        quote.status = Quote.STATUS_SENT
        quote.sent_at = now
        quote.responded_at = None
        quote.save(update_fields=['status', 'sent_at', 'responded_at', 'updated_at'])
        access_token = QuoteAccessToken.objects.create(quote=quote, expires_at=quote.valid_until)

    logger.info("Quote %s sent (was %s)", quote.quote_number, previous_status)

    if not notify_quote_sent(quote, access_token):
        logger.error("Quote %s was sent but the customer email failed", quote.quote_number)
    channel_id = open_quote_conversation(quote)
    if channel_id and channel_id != quote.chat_channel_id:
        Quote.objects.filter(pk=quote.pk).update(chat_channel_id=channel_id)
        quote.chat_channel_id = channel_id
    return quote, access_token


def get_quote_by_access_token(token):
    """Resolve a customer-facing token to its quote, or None if unknown or expired."""
    if not token:
        return None
    access = (
        QuoteAccessToken.objects
        .select_related('quote')
        .filter(token=token)
        .first()
    )
    if access is None or not access.is_valid():
        return None
    return access.quote


def record_view(quote_id):
    now = timezone.now()
    moved = Quote.objects.filter(pk=quote_id, status=Quote.STATUS_SENT).update(
        status=Quote.STATUS_VIEWED,
        viewed_at=now,
        updated_at=now,
    )
    if moved:
        logger.info("Quote %s viewed for the first time", quote_id)
    else:
        Quote.objects.filter(pk=quote_id).update(viewed_at=now)
    return Quote.objects.get(pk=quote_id)


def record_response(quote_id, action, metadata=None):
    """Customer accept/decline from the public endpoint.

    ``declined`` is terminal. ``accepted`` only marks the quote as awaiting its
    down payment; the payment coordinator finalizes it.
    """
    metadata = metadata or {}
    if action not in (QuoteResponse.ACTION_ACCEPTED, QuoteResponse.ACTION_DECLINED):
        raise ValidationError({'action': ["Must be 'accepted' or 'declined'."]})

    now = timezone.now()
    with transaction.atomic():
        quote = Quote.objects.select_for_update().get(pk=quote_id)
        if quote.status not in Quote.AWAITING_RESPONSE_STATUSES:
            raise QuoteStateError({'status': [f"Quote {quote.quote_number} is {quote.status} and cannot be responded to."]})
        if quote.is_expired(now):
            raise ValidationError({'valid_until': ["This quote has expired."]})

        response = QuoteResponse.objects.create(
            quote=quote,
            action=action,
            customer_name=(metadata.get('customer_name') or '')[:150],
            customer_email=metadata.get('customer_email') or '',
            message=metadata.get('message') or '',
            ip_address=metadata.get('ip_address') or None,
            user_agent=(metadata.get('user_agent') or '')[:500],
        )
        quote.responded_at = now
        update_fields = ['responded_at', 'updated_at']
        if action == QuoteResponse.ACTION_DECLINED:
            quote.status = Quote.STATUS_DECLINED
            update_fields.append('status')
        quote.save(update_fields=update_fields)

    logger.info("Quote %s response recorded: %s", quote.quote_number, action)
    return quote, response
