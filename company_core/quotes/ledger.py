"""Quote money math.

Everything in here is pure: callers pass plain values (or objects exposing the
same attribute names as the models) and get Decimals back. Nothing touches the
database, so the functions can be exercised in isolation and re-run as often as
needed without drifting by a cent.
"""
import logging
from collections import namedtuple
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')

TAX_UNIT_DECIMAL = 'decimal'
TAX_UNIT_PERCENT = 'percent'


QuoteTotals = namedtuple(
    'QuoteTotals',
    ['subtotal', 'discount_amount', 'discounted_subtotal', 'tax_amount', 'total'],
)

QuoteOverrides = namedtuple(
    'QuoteOverrides',
    ['discount_percentage', 'discount_amount', 'tax_rate', 'tax_amount', 'is_manual_tax'],
)


def ensure_decimal(value, default='0.00'):
    """Return a Decimal instance for the given value."""
    if isinstance(value, Decimal):
        return value
    if value in (None, ''):
        return Decimal(default)
    if isinstance(value, float):
        # Go through repr so 0.1 becomes Decimal('0.1'), not the binary expansion.
        value = repr(value)
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal(default)


def quantize_money(value):
    return ensure_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class TaxRate:
    """A tax rate that knows which unit it was written in.

    Rates have been stored both as decimals (``0.106``) and as percentages
    (``10.6``) in the same column. ``from_stored`` applies the legacy rule:
    anything at or below 1 is already a decimal, anything above is a percent.
    A genuine sub-1% rate written as a percentage (e.g. ``0.5``) cannot be told
    apart from a 50% decimal rate by this rule.
    """

    __slots__ = ('unit', 'value')

    def __init__(self, value, unit=TAX_UNIT_PERCENT):
        if unit not in (TAX_UNIT_DECIMAL, TAX_UNIT_PERCENT):
            raise ValueError(f"Unknown tax rate unit: {unit!r}")
        self.value = ensure_decimal(value)
        self.unit = unit

    @classmethod
    def from_stored(cls, value):
        rate = ensure_decimal(value)
        if rate <= 1:
            return cls(rate, TAX_UNIT_DECIMAL)
        return cls(rate, TAX_UNIT_PERCENT)

    def as_decimal(self):
        if self.unit == TAX_UNIT_PERCENT:
            return self.value / HUNDRED
        return self.value

    def as_percent(self):
        if self.unit == TAX_UNIT_DECIMAL:
            return self.value * HUNDRED
        return self.value

    def __eq__(self, other):
        if not isinstance(other, TaxRate):
            return NotImplemented
        return self.as_decimal() == other.as_decimal()

    def __hash__(self):
        return hash(self.as_decimal())

    def __repr__(self):
        return f"TaxRate({self.value!s}, unit={self.unit!r})"


def apply_discount(amount, percentage=None, flat_amount=None):
    """Return ``(discount, discounted)`` for ``amount``.

    A positive percentage wins over a flat amount. The discount is capped at
    ``amount`` so the discounted value never goes negative.
    """
    amount = ensure_decimal(amount)
    percentage = ensure_decimal(percentage)
    if percentage > 0:
        discount = amount * percentage / HUNDRED
    else:
        discount = ensure_decimal(flat_amount)
    discount = quantize_money(discount)
    if discount > amount:
        discount = quantize_money(amount)
    return discount, quantize_money(amount - discount)


def line_item_gross(quantity, unit_price):
    return quantize_money(ensure_decimal(quantity) * ensure_decimal(unit_price))


def line_item_total(quantity, unit_price, discount_percentage=None, discount_amount=None):
    gross = line_item_gross(quantity, unit_price)
    _, net = apply_discount(gross, discount_percentage, discount_amount)
    return net


def overrides_from(obj):
    """Build QuoteOverrides from anything that looks like a Quote."""
    return QuoteOverrides(
        discount_percentage=ensure_decimal(getattr(obj, 'discount_percentage', None)),
        discount_amount=ensure_decimal(getattr(obj, 'discount_amount', None)),
        tax_rate=ensure_decimal(getattr(obj, 'tax_rate', None)),
        tax_amount=ensure_decimal(getattr(obj, 'tax_amount', None)),
        is_manual_tax=bool(getattr(obj, 'is_manual_tax', False)),
    )


def calculate_quote_totals(line_item_totals, overrides):
    """Derive every persisted money field of a quote.

    ``line_item_totals`` is an iterable of each item's net total. Order does
    not matter.
    """
    subtotal = quantize_money(sum((ensure_decimal(t) for t in line_item_totals), ZERO))

    requested_flat = ensure_decimal(overrides.discount_amount)
    discount_amount, discounted_subtotal = apply_discount(
        subtotal,
        overrides.discount_percentage,
        requested_flat,
    )
    if ensure_decimal(overrides.discount_percentage) <= 0 and requested_flat > subtotal:
        logger.warning(
            "Flat discount %s exceeds subtotal %s; capping discounted subtotal at zero.",
            requested_flat,
            subtotal,
        )

    if overrides.is_manual_tax:
        tax_amount = quantize_money(overrides.tax_amount)
    else:
        rate = TaxRate.from_stored(overrides.tax_rate)
        tax_amount = quantize_money(discounted_subtotal * rate.as_decimal())

    total = quantize_money(discounted_subtotal + tax_amount)
    return QuoteTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        discounted_subtotal=discounted_subtotal,
        tax_amount=tax_amount,
        total=total,
    )


def calculate_installment(total, percentage):
    """Share of ``total`` owed for an installment percentage, in cents."""
    return quantize_money(ensure_decimal(total) * ensure_decimal(percentage) / HUNDRED)


def to_minor_units(amount):
    """Dollars to integer cents, as the processor expects."""
    return int((quantize_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents):
    return quantize_money(Decimal(int(cents)) / 100)
