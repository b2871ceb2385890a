"""Money value object with currency-aware arithmetic."""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Iterable, Union

from django_invoice_ledger.exceptions import CurrencyMismatchError


# Currency precision rules for settlement/display
CURRENCY_DECIMALS = {
    'USD': 2, 'EUR': 2, 'GBP': 2, 'MXN': 2,
    'CAD': 2, 'AUD': 2, 'CHF': 2, 'CNY': 2,
    'JPY': 0, 'KRW': 0,  # No decimal currencies
}


@dataclass(frozen=True)
class Money:
    """
    Immutable money value object.

    Always normalizes amount to Decimal for precision. Floats are converted
    via their string form so 19.99 stays 19.99.

    Usage:
        net = Money(Decimal("180.00"), "EUR")
        vat = (net * Decimal("0.18")).quantized()  # Money("32.40", "EUR")
        gross = net + vat

    VAT law rounds half-up, so quantized() defaults to ROUND_HALF_UP.
    """
    amount: Decimal
    currency: str

    def __post_init__(self):
        """Normalize amount to Decimal."""
        if not isinstance(self.amount, Decimal):
            # Use object.__setattr__ because dataclass is frozen
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

    @classmethod
    def zero(cls, currency: str) -> 'Money':
        """Return a zero amount in the given currency."""
        return cls(Decimal('0'), currency)

    @classmethod
    def total(cls, values: Iterable['Money'], currency: str) -> 'Money':
        """Sum Money values, starting from zero in `currency`."""
        result = cls.zero(currency)
        for value in values:
            result = result + value
        return result

    @property
    def decimals(self) -> int:
        """Number of minor-unit digits for this currency."""
        return CURRENCY_DECIMALS.get(self.currency, 2)

    def quantized(self, rounding: str = ROUND_HALF_UP) -> 'Money':
        """
        Return quantized to currency decimals for display/settlement.

        Args:
            rounding: A decimal rounding mode (defaults to half-up)

        Returns:
            New Money object with quantized amount
        """
        quantized_amount = self.amount.quantize(
            Decimal(10) ** -self.decimals,
            rounding=rounding,
        )
        return Money(quantized_amount, self.currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                f"Cannot {verb} {self.currency} and {other.currency}"
            )

    def __add__(self, other: 'Money') -> 'Money':
        """Add two Money objects with the same currency."""
        self._check_currency(other, 'add')
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        """Subtract two Money objects with the same currency."""
        self._check_currency(other, 'subtract')
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Union[Decimal, int, float]) -> 'Money':
        """Multiply Money by a numeric factor."""
        return Money(self.amount * Decimal(str(factor)), self.currency)

    def __rmul__(self, factor: Union[Decimal, int, float]) -> 'Money':
        """Right multiplication (factor * money)."""
        return self.__mul__(factor)

    def __neg__(self) -> 'Money':
        """Negate the money amount."""
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        """Return absolute value of Money."""
        return Money(abs(self.amount), self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, 'compare')
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, 'compare')
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, 'compare')
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, 'compare')
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.currency} {self.quantized().amount}"

    def is_positive(self) -> bool:
        """Check if amount is greater than zero."""
        return self.amount > 0

    def is_negative(self) -> bool:
        """Check if amount is less than zero."""
        return self.amount < 0

    def is_zero(self) -> bool:
        """Check if amount is exactly zero."""
        return self.amount == 0

    def is_near_zero(self, tolerance: Decimal) -> bool:
        """Check if amount lies strictly within `tolerance` of zero."""
        return abs(self.amount) < tolerance
