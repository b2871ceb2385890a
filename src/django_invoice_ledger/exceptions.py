"""Exceptions for django-invoice-ledger."""


class InvoiceLedgerError(Exception):
    """Base exception for invoice ledger errors."""
    pass


class ValidationError(InvoiceLedgerError):
    """Raised when input violates a business rule (amounts, discounts, reasons)."""

    def __init__(self, message: str, field: str = ''):
        self.field = field
        super().__init__(message)


class PaymentValidationError(ValidationError):
    """Raised when a payment amount falls outside its permitted bounds.

    Carries the violated bound and the invoice's remaining balance so the
    caller can explain the rejection.
    """

    def __init__(self, message: str, bound, remaining_balance=None):
        self.bound = bound
        self.remaining_balance = remaining_balance
        super().__init__(message, field='amount')


class ImmutableDocumentError(InvoiceLedgerError):
    """Raised when a write targets frozen fields of an issued document."""
    pass


class InvalidStateError(InvoiceLedgerError):
    """Raised on an invalid lifecycle transition (double issue, re-conversion)."""
    pass


class NotFoundError(InvoiceLedgerError):
    """Raised when a referenced document or customer does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' does not exist")


class InconsistentBalanceError(InvoiceLedgerError):
    """Raised when a concurrent write changed the invoice under a recompute.

    The caller should retry the whole operation.
    """

    def __init__(self, message: str, expected_version=None, actual_version=None):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message)


class LedgerConfigError(InvoiceLedgerError):
    """Raised when invoice ledger settings are invalid."""
    pass


class CurrencyMismatchError(InvoiceLedgerError, ValueError):
    """Raised when attempting operations between different currencies."""
    pass
