"""Payment recording.

A payment insert and the status recomputation it triggers happen in one
transaction with the invoice row locked, so two concurrent payments can
never both decide `partially_paid` from the same stale balance.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from django.db import transaction
from django.utils import timezone

from django_invoice_ledger.calculator import to_decimal
from django_invoice_ledger.conf import get_balance_tolerance
from django_invoice_ledger.exceptions import (
    InvalidStateError,
    PaymentValidationError,
    ValidationError,
)
from django_invoice_ledger.issuance import check_expected_version, recalculate_status
from django_invoice_ledger.models import Payment, PaymentMethod
from django_invoice_ledger.money import Money
from django_invoice_ledger.selectors import get_invoice_for_update, get_invoice_totals, invoice_pk
from django_invoice_ledger.settlement import calculate_invoice_settlement


logger = logging.getLogger(__name__)


def validate_payment_amount(
    amount: Money,
    remaining_balance: Money,
    tolerance: Optional[Decimal] = None,
) -> None:
    """
    Check a payment amount against the invoice's remaining balance.

    Rejects amounts at or below zero (bound 0.00) and amounts exceeding the
    remaining balance by the tolerance or more (bound = remaining balance).

    Raises:
        PaymentValidationError: Carrying the violated bound and the remaining balance
    """
    if tolerance is None:
        tolerance = get_balance_tolerance()
    remaining = remaining_balance.quantized()

    if not amount.is_positive():
        bound = Money.zero(amount.currency).quantized()
        raise PaymentValidationError(
            f"Payment amount must be greater than {bound.amount}",
            bound=bound.amount,
            remaining_balance=remaining.amount,
        )
    if (amount - remaining).amount >= tolerance:
        raise PaymentValidationError(
            f"Payment amount {amount.amount} exceeds the remaining balance {remaining.amount}",
            bound=remaining.amount,
            remaining_balance=remaining.amount,
        )


def record_payment(
    invoice,
    amount,
    *,
    method: str = PaymentMethod.BANK_TRANSFER,
    payment_date: Optional[date] = None,
    reference: str = '',
    actor=None,
    expected_version: Optional[int] = None,
    today: Optional[date] = None,
) -> Payment:
    """
    Record a payment against an issued invoice and recompute its status.

    Args:
        invoice: Invoice instance or id
        amount: Payment amount (rounded half-up to currency precision)
        method: One of PaymentMethod
        payment_date: Defaults to today
        reference: Bank reference, cheque number, ...
        actor: User recording the payment
        expected_version: Optional optimistic-concurrency token
        today: Reference date for the overdue status

    Returns:
        The created Payment

    Raises:
        PaymentValidationError: If the amount is not positive or exceeds the balance
        ValidationError: On an unknown method or a non-numeric or non-finite amount
        InvalidStateError: If the invoice is not issued
        InconsistentBalanceError: If expected_version is stale
        NotFoundError: If the invoice does not exist

    Usage:
        payment = record_payment(invoice, Decimal('200.00'), method=PaymentMethod.CARD)
    """
    raw_amount = to_decimal(amount, 'amount')
    if method not in PaymentMethod.values:
        raise ValidationError(f"Unknown payment method '{method}'", field='method')

    with transaction.atomic():
        locked = get_invoice_for_update(invoice_pk(invoice))
        if not locked.is_issued:
            raise InvalidStateError("Payments can only be recorded against issued invoices")
        check_expected_version(locked, expected_version)

        settlement = calculate_invoice_settlement(
            locked,
            get_invoice_totals(locked).grand_total,
            locked.credit_notes.all(),
            locked.payments.all(),
            today=today,
        )
        payment_amount = Money(raw_amount, locked.currency).quantized()
        try:
            validate_payment_amount(payment_amount, settlement.remaining_balance)
        except PaymentValidationError as exc:
            logger.warning(f"Rejected payment of {payment_amount} on invoice {locked.invoice_number}: {exc}")
            raise

        payment = Payment.objects.create(
            owner_id=locked.owner_id,
            invoice=locked,
            amount=payment_amount.amount,
            payment_date=payment_date or timezone.localdate(),
            method=method,
            reference=reference,
            recorded_by=actor,
        )
        new_settlement = recalculate_status(locked, today=today)

    logger.info(
        f"Recorded payment {payment_amount} on invoice {locked.invoice_number}, "
        f"remaining {new_settlement.remaining_balance}, status {new_settlement.status}"
    )
    return payment
