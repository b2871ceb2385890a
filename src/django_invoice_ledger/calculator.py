"""VAT and discount calculation for invoices, credit notes and quotations.

Order of operations: subtotal -> discount -> taxable -> VAT -> grand total.

The discount is applied before VAT. For documents with mixed VAT rates the
discount is allocated proportionally across the rate buckets, and the
rounding residue goes to the largest bucket so the allocations add up to
the discount exactly. VAT is rounded once per rate bucket, never per line.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple

from django.db import models

from django_invoice_ledger.exceptions import ValidationError
from django_invoice_ledger.money import Money


class DiscountType(models.TextChoices):
    NONE = 'none', 'No discount'
    AMOUNT = 'amount', 'Fixed amount'
    PERCENT = 'percent', 'Percentage'


@dataclass(frozen=True)
class Discount:
    """A document-level discount policy."""

    type: str = DiscountType.NONE
    value: Decimal = Decimal('0')

    def __post_init__(self):
        if not isinstance(self.value, Decimal):
            object.__setattr__(self, 'value', Decimal(str(self.value or 0)))

    @property
    def is_none(self) -> bool:
        return self.type == DiscountType.NONE or not self.value


@dataclass(frozen=True)
class LineInput:
    """Plain line item for calculations outside the ORM.

    Model line items expose the same attributes and can be passed directly.
    """

    quantity: Decimal
    unit_price_amount: Decimal
    vat_rate: Decimal
    description: str = ''
    unit: str = ''


@dataclass(frozen=True)
class VatBucket:
    """Totals for all lines sharing one VAT rate."""

    rate: Decimal
    net: Money
    discount: Money
    taxable: Money
    vat: Money


@dataclass(frozen=True)
class DocumentTotals:
    """Derived totals of a document. All values are quantized Money."""

    subtotal: Money
    discount_amount: Money
    taxable_amount: Money
    vat_total: Money
    grand_total: Money
    vat_breakdown: Tuple[VatBucket, ...] = ()

    @property
    def currency(self) -> str:
        return self.grand_total.currency


def line_total(line) -> Decimal:
    """Return quantity x unit price for a line, unrounded."""
    return Decimal(str(line.quantity)) * Decimal(str(line.unit_price_amount))


def calculate_discount_amount(subtotal: Money, discount: Optional[Discount]) -> Money:
    """
    Calculate the discount amount for a subtotal.

    Percentages are clamped to [0, 100]; fixed amounts are clamped to
    [0, subtotal]. The result never exceeds the subtotal.

    Args:
        subtotal: The quantized document subtotal
        discount: The discount policy (None means no discount)

    Returns:
        Quantized discount amount
    """
    zero = Money.zero(subtotal.currency)
    if discount is None or discount.is_none:
        return zero

    if discount.type == DiscountType.PERCENT:
        percent = min(max(discount.value, Decimal('0')), Decimal('100'))
        amount = (subtotal * (percent / Decimal('100'))).quantized()
    elif discount.type == DiscountType.AMOUNT:
        amount = Money(min(max(discount.value, Decimal('0')), subtotal.amount), subtotal.currency).quantized()
    else:
        raise ValueError(f"Unknown discount type: {discount.type!r}")

    return min(amount, subtotal)


def _allocate_discount(
    buckets: List[Tuple[Decimal, Decimal]],
    subtotal: Money,
    discount_amount: Money,
) -> List[Money]:
    currency = subtotal.currency
    allocations = []
    for _, net in buckets:
        if subtotal.amount > 0:
            share = net / subtotal.amount
        else:
            share = Decimal('0')
        allocations.append((discount_amount * share).quantized())

    residue = discount_amount - Money.total(allocations, currency)
    if not residue.is_zero() and allocations:
        largest = 0
        for index, (_, net) in enumerate(buckets):
            if net > buckets[largest][1]:
                largest = index
        allocations[largest] = (allocations[largest] + residue).quantized()

    return allocations


def calculate_totals(
    lines: Iterable,
    discount: Optional[Discount] = None,
    currency: str = 'EUR',
) -> DocumentTotals:
    """
    Derive net, discount, taxable, VAT and gross totals from line items.

    Args:
        lines: Objects exposing quantity, unit_price_amount and vat_rate
        discount: Optional document-level discount
        currency: ISO currency code for the results

    Returns:
        DocumentTotals with every figure quantized half-up

    Usage:
        totals = calculate_totals(
            [LineInput(Decimal('2'), Decimal('100.00'), Decimal('0.18'))],
            Discount(DiscountType.PERCENT, Decimal('10')),
        )
        totals.grand_total  # Money("212.40", "EUR")
    """
    per_rate = {}
    raw_subtotal = Decimal('0')

    for line in lines:
        net = line_total(line)
        rate = Decimal(str(line.vat_rate))
        raw_subtotal += net
        per_rate[rate] = per_rate.get(rate, Decimal('0')) + net

    subtotal = Money(raw_subtotal, currency).quantized()
    discount_amount = calculate_discount_amount(subtotal, discount)

    buckets = list(per_rate.items())
    allocations = _allocate_discount(buckets, subtotal, discount_amount)

    breakdown = []
    for (rate, net), allocated in zip(buckets, allocations):
        taxable = Money(max(net - allocated.amount, Decimal('0')), currency).quantized()
        vat = (taxable * rate).quantized()
        breakdown.append(VatBucket(
            rate=rate,
            net=Money(net, currency).quantized(),
            discount=allocated,
            taxable=taxable,
            vat=vat,
        ))

    vat_total = Money.total((bucket.vat for bucket in breakdown), currency).quantized()
    taxable_amount = (subtotal - discount_amount).quantized()

    return DocumentTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        taxable_amount=taxable_amount,
        vat_total=vat_total,
        grand_total=(taxable_amount + vat_total).quantized(),
        vat_breakdown=tuple(breakdown),
    )


def validate_discount(discount: Optional[Discount]) -> None:
    """Reject discount policies outside their bounds before they are stored.

    The calculator clamps out-of-range values; stored policies must already be in range.

    Raises:
        ValidationError: On unknown type, a non-finite or negative value, or percent above 100
    """
    if discount is None:
        return
    if discount.type not in DiscountType.values:
        raise ValidationError(f"Unknown discount type '{discount.type}'", field='discount_type')
    if not discount.value.is_finite():
        raise ValidationError("Discount value must be a finite number", field='discount_value')
    if discount.value < 0:
        raise ValidationError("Discount value must not be negative", field='discount_value')
    if discount.type == DiscountType.PERCENT and discount.value > 100:
        raise ValidationError("Percentage discount must not exceed 100", field='discount_value')


def _field(item, name, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def to_decimal(value, field: str) -> Decimal:
    """Convert input to a finite Decimal, raising ValidationError naming the field otherwise."""
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field} must be a number, got {value!r}", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number, got {value!r}", field=field)
    return result


def clean_line_items(items: Iterable) -> List[dict]:
    """
    Validate line items and normalize them to model field values.

    Items may be dicts or objects exposing description, quantity,
    unit_price_amount, vat_rate and (optionally) unit.

    Raises:
        ValidationError: On a non-finite value, a negative quantity or price, or a VAT rate outside [0, 1]
    """
    cleaned = []
    for item in items:
        quantity = to_decimal(_field(item, 'quantity'), 'quantity')
        unit_price = to_decimal(_field(item, 'unit_price_amount'), 'unit_price_amount')
        vat_rate = to_decimal(_field(item, 'vat_rate', Decimal('0')), 'vat_rate')

        if quantity < 0:
            raise ValidationError("Quantity must not be negative", field='quantity')
        if unit_price < 0:
            raise ValidationError("Unit price must not be negative", field='unit_price_amount')
        if not Decimal('0') <= vat_rate <= Decimal('1'):
            raise ValidationError("VAT rate must be a fraction between 0 and 1", field='vat_rate')

        cleaned.append({
            'description': _field(item, 'description', '') or '',
            'quantity': quantity,
            'unit_price_amount': unit_price,
            'vat_rate': vat_rate,
            'unit': _field(item, 'unit', '') or '',
        })
    return cleaned
