"""Settlement calculation: the one place an invoice's balance is derived.

remaining_balance = gross_total - sum(credit note gross) - sum(payments)

Every read path (facade, status recomputation, payment validation, the
activity timeline) goes through calculate_settlement(). Do not recompute
balances elsewhere.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from django.utils import timezone

from django_invoice_ledger.conf import get_balance_tolerance
from django_invoice_ledger.exceptions import CurrencyMismatchError
from django_invoice_ledger.models import InvoiceStatus
from django_invoice_ledger.money import Money


# Settlement statuses are the invoice statuses; the stored column caches them.
SettlementStatus = InvoiceStatus


@dataclass(frozen=True)
class SettlementView:
    """
    Derived settlement figures for one invoice. Never persisted.

    `remaining_balance` is the balance. It may be negative, which means the
    customer holds a credit balance. `outstanding_before_credits` ignores
    credit notes and is not a balance; it only answers "how much of the
    gross total has not been paid in cash".
    """

    gross_total: Money
    total_credits: Money
    total_payments: Money
    remaining_balance: Money
    outstanding_before_credits: Money
    status: str

    @property
    def currency(self) -> str:
        return self.gross_total.currency

    @property
    def is_settled(self) -> bool:
        return self.status == InvoiceStatus.PAID

    @property
    def has_credit_balance(self) -> bool:
        return self.remaining_balance.is_negative()

    @property
    def credit_balance(self) -> Money:
        """Amount owed to the customer (zero unless the balance is negative)."""
        if self.has_credit_balance:
            return -self.remaining_balance
        return Money.zero(self.currency)

    def as_dict(self) -> dict:
        """Plain-data form for collaborators (amounts as strings)."""
        return {
            'currency': self.currency,
            'gross_total': str(self.gross_total.amount),
            'total_credits': str(self.total_credits.amount),
            'total_payments': str(self.total_payments.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'outstanding_before_credits': str(self.outstanding_before_credits.amount),
            'credit_balance': str(self.credit_balance.amount),
            'status': str(self.status),
        }


def balance_is_settled(remaining_balance: Money, tolerance: Optional[Decimal] = None) -> bool:
    """True when nothing is owed: balance at or below zero, or within tolerance of it."""
    if tolerance is None:
        tolerance = get_balance_tolerance()
    return remaining_balance.amount <= 0 or remaining_balance.is_near_zero(tolerance)


def _to_money(amount, currency: str, document_currency: Optional[str]) -> Money:
    if document_currency and document_currency != currency:
        raise CurrencyMismatchError(
            f"Cannot settle {document_currency} document against {currency} invoice"
        )
    return Money(amount, currency)


def calculate_settlement(
    gross_total: Money,
    credit_notes: Iterable,
    payments: Iterable,
    *,
    is_issued: bool = True,
    due_date: Optional[date] = None,
    today: Optional[date] = None,
    tolerance: Optional[Decimal] = None,
) -> SettlementView:
    """
    Reduce an invoice, its credit notes and its payments to a SettlementView.

    Pure: the result depends only on the arguments (and `today`, which only
    affects the overdue status). Ordering of credit notes and payments does
    not matter.

    Args:
        gross_total: The invoice's VAT-inclusive grand total
        credit_notes: Objects exposing gross_amount (and optionally currency)
        payments: Objects exposing amount (and optionally currency)
        is_issued: Whether the invoice has been issued
        due_date: Invoice due date, for the overdue status
        today: Reference date for overdue (defaults to the local date)
        tolerance: Balance tolerance (defaults to settings)

    Returns:
        SettlementView

    Raises:
        CurrencyMismatchError: If a document is in another currency
    """
    currency = gross_total.currency
    if tolerance is None:
        tolerance = get_balance_tolerance()

    total_credits = Money.total(
        (_to_money(cn.gross_amount, currency, getattr(cn, 'currency', None)) for cn in credit_notes),
        currency,
    )
    total_payments = Money.total(
        (_to_money(p.amount, currency, getattr(p, 'currency', None)) for p in payments),
        currency,
    )

    remaining = gross_total - total_credits - total_payments
    outstanding = max(gross_total - total_payments, Money.zero(currency))

    if not is_issued:
        status = InvoiceStatus.DRAFT
    elif balance_is_settled(remaining, tolerance):
        status = InvoiceStatus.PAID
    elif total_payments.is_positive():
        status = InvoiceStatus.PARTIALLY_PAID
    elif due_date is not None and due_date < (today or timezone.localdate()):
        status = InvoiceStatus.OVERDUE
    else:
        status = InvoiceStatus.ISSUED

    return SettlementView(
        gross_total=gross_total,
        total_credits=total_credits,
        total_payments=total_payments,
        remaining_balance=remaining,
        outstanding_before_credits=outstanding,
        status=status,
    )


def calculate_invoice_settlement(
    invoice,
    gross_total: Money,
    credit_notes: Iterable,
    payments: Iterable,
    *,
    today: Optional[date] = None,
    tolerance: Optional[Decimal] = None,
) -> SettlementView:
    """Settle an invoice instance, taking issue state and due date from it."""
    return calculate_settlement(
        gross_total,
        credit_notes,
        payments,
        is_issued=invoice.is_issued,
        due_date=invoice.due_date,
        today=today,
        tolerance=tolerance,
    )
