"""Configuration for django-invoice-ledger."""

from decimal import Decimal, InvalidOperation

from django.conf import settings

from django_invoice_ledger.exceptions import LedgerConfigError


DEFAULT_CURRENCY = 'EUR'
DEFAULT_BALANCE_TOLERANCE = Decimal('0.01')
DEFAULT_NUMBER_PREFIXES = {
    'invoice': 'INV-',
    'credit_note': 'CN-',
    'quotation': 'QUO-',
}
DEFAULT_NUMBER_PAD_WIDTH = 4


def get_currency() -> str:
    """Get the ISO currency code used for new documents.

    Reads INVOICE_LEDGER_CURRENCY from Django settings.
    """
    currency = getattr(settings, 'INVOICE_LEDGER_CURRENCY', DEFAULT_CURRENCY)
    if not isinstance(currency, str) or len(currency) != 3:
        raise LedgerConfigError(
            f"INVOICE_LEDGER_CURRENCY must be a 3-letter ISO code, got {currency!r}"
        )
    return currency.upper()


def get_balance_tolerance() -> Decimal:
    """Get the tolerance used for every balance comparison.

    Reads INVOICE_LEDGER_BALANCE_TOLERANCE from Django settings.

    Raises:
        LedgerConfigError: If the value is not a non-negative decimal
    """
    raw = getattr(settings, 'INVOICE_LEDGER_BALANCE_TOLERANCE', DEFAULT_BALANCE_TOLERANCE)
    try:
        tolerance = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise LedgerConfigError(
            f"INVOICE_LEDGER_BALANCE_TOLERANCE must be a decimal, got {raw!r}"
        )
    if not tolerance.is_finite() or tolerance < 0:
        raise LedgerConfigError("INVOICE_LEDGER_BALANCE_TOLERANCE must be a finite, non-negative decimal")
    return tolerance


def get_number_prefix(scope: str) -> str:
    """Get the document number prefix for a scope ('invoice', 'credit_note', 'quotation')."""
    prefixes = dict(DEFAULT_NUMBER_PREFIXES)
    prefixes.update(getattr(settings, 'INVOICE_LEDGER_NUMBER_PREFIXES', {}))
    try:
        return prefixes[scope]
    except KeyError:
        raise LedgerConfigError(f"No number prefix configured for scope '{scope}'")


def get_number_pad_width() -> int:
    """Get the zero-padding width for document numbers."""
    width = getattr(settings, 'INVOICE_LEDGER_NUMBER_PAD_WIDTH', DEFAULT_NUMBER_PAD_WIDTH)
    if not isinstance(width, int) or width < 1:
        raise LedgerConfigError(
            f"INVOICE_LEDGER_NUMBER_PAD_WIDTH must be a positive integer, got {width!r}"
        )
    return width
