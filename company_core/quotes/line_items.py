import logging
from decimal import Decimal, InvalidOperation

from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction

from .exceptions import QuoteStateError
from .ledger import (
    HUNDRED,
    calculate_quote_totals,
    line_item_gross,
    overrides_from,
    quantize_money,
)
from .models import Quote, QuoteLineItem

logger = logging.getLogger(__name__)

MAX_MONEY = Decimal('9999999999.99')

DECIMAL_FIELDS = ('quantity', 'unit_price', 'discount_percentage', 'discount_amount')
TEXT_FIELDS = ('category', 'description', 'unit')
EDITABLE_FIELDS = DECIMAL_FIELDS + TEXT_FIELDS + ('sort_order',)
REQUIRED_ON_CREATE = ('category', 'description', 'unit_price')

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off', '')


def parse_money(field, value, errors, *, maximum=MAX_MONEY):
    """Parse ``value`` as a non-negative fixed-point amount, recording failures in ``errors``.

    Values with more than two decimal places are rejected rather than rounded.
    """
    amount = parse_decimal(field, value, errors, maximum=maximum)
    if amount is None:
        return None
    if quantize_money(amount) != amount:
        errors.setdefault(field, []).append("Use at most 2 decimal places.")
        return None
    return quantize_money(amount)


def parse_decimal(field, value, errors, *, maximum=MAX_MONEY):
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        errors.setdefault(field, []).append("Enter a valid decimal number.")
        return None
    if not amount.is_finite():
        errors.setdefault(field, []).append("Enter a valid decimal number.")
        return None
    if amount < 0:
        errors.setdefault(field, []).append("Must not be negative.")
        return None
    if amount > maximum:
        errors.setdefault(field, []).append(f"Must not exceed {maximum}.")
        return None
    return amount


def parse_bool(field, value, errors):
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    errors.setdefault(field, []).append("Enter true or false.")
    return None


def _clean_line_item_fields(fields, *, creating):
    unknown = set(fields) - set(EDITABLE_FIELDS)
    errors = {}
    for name in sorted(unknown):
        errors[name] = ["Unknown line item field."]

    cleaned = {}
    for name in DECIMAL_FIELDS:
        if name not in fields:
            continue
        maximum = HUNDRED if name == 'discount_percentage' else MAX_MONEY
        value = parse_money(name, fields[name], errors, maximum=maximum)
        if value is not None:
            cleaned[name] = value

    for name in TEXT_FIELDS:
        if name not in fields:
            continue
        raw = fields[name]
        value = '' if raw is None else str(raw).strip()
        if name != 'unit' and not value:
            errors.setdefault(name, []).append("This field may not be blank.")
            continue
        cleaned[name] = value or 'each'

    if 'sort_order' in fields:
        try:
            sort_order = int(fields['sort_order'])
        except (TypeError, ValueError):
            errors.setdefault('sort_order', []).append("Enter a whole number.")
        else:
            if sort_order < 0:
                errors.setdefault('sort_order', []).append("Must not be negative.")
            else:
                cleaned['sort_order'] = sort_order

    if creating:
        for name in REQUIRED_ON_CREATE:
            if name not in fields and name not in errors:
                errors[name] = ["This field is required."]

    if errors:
        raise ValidationError(errors)
    return cleaned


def _check_item_discount(item):
    gross = line_item_gross(item.quantity, item.unit_price)
    if item.discount_percentage <= 0 and item.discount_amount > gross:
        raise ValidationError({
            'discount_amount': [f"Discount {item.discount_amount} exceeds the line amount {gross}."],
        })


def _ensure_quote_editable(quote):
    if quote.is_frozen:
        raise QuoteStateError({'quote': [f"Quote {quote.quote_number} is accepted and can no longer be edited."]})


def recompute_totals(quote_id):
    """Recompute and persist a quote's derived money fields. Returns the QuoteTotals."""
    try:
        with transaction.atomic():
            quote = Quote.objects.get(pk=quote_id)
            item_totals = QuoteLineItem.objects.filter(quote_id=quote_id).values_list('total_price', flat=True)
            totals = calculate_quote_totals(item_totals, overrides_from(quote))
            Quote.objects.filter(pk=quote_id).update(**totals._asdict())
    except DatabaseError:
        logger.exception("Failed to recompute totals for quote %s", quote_id)
        raise
    logger.debug("Quote %s totals recomputed: %s", quote_id, totals)
    return totals


def totals_are_stale(quote):
    item_totals = [item.total_price for item in quote.line_items.all()]
    fresh = calculate_quote_totals(item_totals, overrides_from(quote))
    persisted = tuple(quantize_money(getattr(quote, name)) for name in fresh._fields)
    return persisted != tuple(fresh)


def get_quote_for_display(quote):
    """Return ``quote`` with totals guaranteed to match its line items.

    Accepted quotes are frozen, so a mismatch there is logged but left alone.
    """
    if not totals_are_stale(quote):
        return quote
    if quote.is_frozen:
        logger.warning("Accepted quote %s has stale totals; leaving them untouched.", quote.quote_number)
        return quote
    logger.warning("Quote %s had stale totals; recomputing on read.", quote.quote_number)
    recompute_totals(quote.pk)
    quote.refresh_from_db()
    return quote


def list_line_items(quote_id):
    return list(QuoteLineItem.objects.filter(quote_id=quote_id).order_by('sort_order', 'id'))


def create_line_item(quote_id, fields):
    cleaned = _clean_line_item_fields(fields, creating=True)
    with transaction.atomic():
        quote = Quote.objects.get(pk=quote_id)
        _ensure_quote_editable(quote)
        item = QuoteLineItem(quote=quote, **cleaned)
        _check_item_discount(item)
        item.save()
        recompute_totals(quote.pk)
    logger.info("Line item %s added to quote %s", item.pk, quote.quote_number)
    return item


def update_line_item(item_id, fields):
    cleaned = _clean_line_item_fields(fields, creating=False)
    with transaction.atomic():
        item = QuoteLineItem.objects.select_related('quote').get(pk=item_id)
        _ensure_quote_editable(item.quote)
        for name, value in cleaned.items():
            setattr(item, name, value)
        _check_item_discount(item)
        item.save()
        recompute_totals(item.quote_id)
    return item


def delete_line_item(item_id):
    with transaction.atomic():
        item = QuoteLineItem.objects.select_related('quote').get(pk=item_id)
        _ensure_quote_editable(item.quote)
        quote_id = item.quote_id
        item.delete()
        recompute_totals(quote_id)
    logger.info("Line item %s removed from quote %s", item_id, quote_id)
