"""Tests for the VAT and discount calculator."""
import pytest
from decimal import Decimal

from django_invoice_ledger.calculator import (
    Discount,
    DiscountType,
    LineInput,
    calculate_discount_amount,
    calculate_totals,
    clean_line_items,
    validate_discount,
)
from django_invoice_ledger.exceptions import ValidationError
from django_invoice_ledger.money import Money


def _line(price, quantity='1', rate='0'):
    return LineInput(Decimal(quantity), Decimal(price), Decimal(rate))


class TestCalculateTotals:
    """Test suite for calculate_totals."""

    def test_percent_discount_before_vat(self):
        """10% off 200.00 at 18% VAT should give 20.00 / 180.00 / 32.40 / 212.40."""
        totals = calculate_totals(
            [_line('100.00', quantity='2', rate='0.18')],
            Discount(DiscountType.PERCENT, Decimal('10')),
        )
        assert totals.subtotal.amount == Decimal('200.00')
        assert totals.discount_amount.amount == Decimal('20.00')
        assert totals.taxable_amount.amount == Decimal('180.00')
        assert totals.vat_total.amount == Decimal('32.40')
        assert totals.grand_total.amount == Decimal('212.40')

    def test_no_lines(self):
        """An empty document totals zero."""
        totals = calculate_totals([])
        assert totals.grand_total == Money(Decimal('0.00'), 'EUR')
        assert totals.vat_breakdown == ()

    def test_currency_is_carried(self):
        """Results should be in the requested currency."""
        totals = calculate_totals([_line('10.00')], currency='GBP')
        assert totals.currency == 'GBP'

    def test_vat_rounded_once_per_rate(self):
        """Three lines of 0.05 at 10% VAT round once: 0.015 -> 0.02, not 3 x 0.01."""
        totals = calculate_totals([_line('0.05', rate='0.10')] * 3)
        assert totals.vat_total.amount == Decimal('0.02')

    def test_mixed_rates_allocate_discount_proportionally(self):
        """The discount is split across VAT-rate buckets by net share."""
        totals = calculate_totals(
            [_line('300.00', rate='0.18'), _line('100.00', rate='0.05')],
            Discount(DiscountType.AMOUNT, Decimal('40.00')),
        )
        by_rate = {bucket.rate: bucket for bucket in totals.vat_breakdown}
        assert by_rate[Decimal('0.18')].discount.amount == Decimal('30.00')
        assert by_rate[Decimal('0.05')].discount.amount == Decimal('10.00')
        # 270.00 * 0.18 + 90.00 * 0.05
        assert totals.vat_total.amount == Decimal('53.10')
        assert totals.grand_total.amount == Decimal('413.10')

    def test_allocation_residue_goes_to_largest_bucket(self):
        """Allocated discounts always add up to the discount exactly."""
        totals = calculate_totals(
            [_line('10.00', rate='0.18'), _line('10.00', rate='0.05'), _line('10.00', rate='0')],
            Discount(DiscountType.AMOUNT, Decimal('10.00')),
        )
        allocated = sum(bucket.discount.amount for bucket in totals.vat_breakdown)
        assert allocated == Decimal('10.00')
        # Equal buckets: the first one absorbs the residue
        assert totals.vat_breakdown[0].discount.amount == Decimal('3.34')

    def test_grand_total_is_taxable_plus_vat(self):
        """grand_total = taxable_amount + vat_total."""
        totals = calculate_totals(
            [_line('19.99', quantity='3', rate='0.21'), _line('5.50', rate='0.06')],
            Discount(DiscountType.PERCENT, Decimal('7.5')),
        )
        assert totals.grand_total == totals.taxable_amount + totals.vat_total
        assert totals.taxable_amount == totals.subtotal - totals.discount_amount


class TestCalculateDiscountAmount:
    """Test suite for discount clamping."""

    def test_percent_is_clamped_to_100(self):
        """A percentage above 100 discounts the whole subtotal."""
        subtotal = Money(Decimal('80.00'), 'EUR')
        amount = calculate_discount_amount(subtotal, Discount(DiscountType.PERCENT, Decimal('150')))
        assert amount.amount == Decimal('80.00')

    def test_fixed_amount_is_clamped_to_subtotal(self):
        """A fixed discount never exceeds the subtotal."""
        subtotal = Money(Decimal('80.00'), 'EUR')
        amount = calculate_discount_amount(subtotal, Discount(DiscountType.AMOUNT, Decimal('100')))
        assert amount.amount == Decimal('80.00')

    def test_negative_is_clamped_to_zero(self):
        """A negative discount value counts as no discount."""
        subtotal = Money(Decimal('80.00'), 'EUR')
        amount = calculate_discount_amount(subtotal, Discount(DiscountType.AMOUNT, Decimal('-5')))
        assert amount.is_zero()

    def test_none(self):
        """No policy means no discount."""
        assert calculate_discount_amount(Money(Decimal('10'), 'EUR'), None).is_zero()


class TestValidation:
    """Test suite for input validation."""

    def test_percent_above_100_rejected(self):
        """Stored percentage discounts must not exceed 100."""
        with pytest.raises(ValidationError) as exc_info:
            validate_discount(Discount(DiscountType.PERCENT, Decimal('101')))
        assert exc_info.value.field == 'discount_value'

    def test_unknown_discount_type_rejected(self):
        """Unknown discount types are rejected."""
        with pytest.raises(ValidationError):
            validate_discount(Discount('coupon', Decimal('5')))

    def test_negative_quantity_rejected(self):
        """Line quantities must not be negative."""
        with pytest.raises(ValidationError) as exc_info:
            clean_line_items([{'quantity': '-1', 'unit_price_amount': '10', 'vat_rate': '0'}])
        assert exc_info.value.field == 'quantity'

    def test_vat_rate_must_be_fraction(self):
        """VAT rates are fractions, not percentages."""
        with pytest.raises(ValidationError) as exc_info:
            clean_line_items([{'quantity': '1', 'unit_price_amount': '10', 'vat_rate': '18'}])
        assert exc_info.value.field == 'vat_rate'

    @pytest.mark.parametrize('field', ['quantity', 'unit_price_amount', 'vat_rate'])
    @pytest.mark.parametrize('value', ['NaN', 'Infinity', 'sNaN'])
    def test_non_finite_values_rejected(self, field, value):
        """NaN and infinities are rejected with the offending field."""
        item = {'quantity': '1', 'unit_price_amount': '10', 'vat_rate': '0'}
        item[field] = value
        with pytest.raises(ValidationError) as exc_info:
            clean_line_items([item])
        assert exc_info.value.field == field

    def test_non_finite_discount_rejected(self):
        """A discount value must be a finite number."""
        with pytest.raises(ValidationError) as exc_info:
            validate_discount(Discount(DiscountType.AMOUNT, Decimal('Infinity')))
        assert exc_info.value.field == 'discount_value'

    def test_clean_line_items_normalizes_to_decimal(self):
        """Cleaned items carry Decimals and default labels."""
        [item] = clean_line_items([{'quantity': 2, 'unit_price_amount': '9.99', 'vat_rate': '0.2'}])
        assert item['quantity'] == Decimal('2')
        assert item['unit_price_amount'] == Decimal('9.99')
        assert item['description'] == ''
        assert item['unit'] == ''
