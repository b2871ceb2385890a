"""Credit notes: the only correction mechanism for issued invoices."""

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from django.db import transaction
from django.utils import timezone

from django_invoice_ledger.audit import record_audit_entry
from django_invoice_ledger.calculator import clean_line_items, to_decimal
from django_invoice_ledger.exceptions import InvalidStateError, ValidationError
from django_invoice_ledger.issuance import check_expected_version, recalculate_status
from django_invoice_ledger.models import AuditAction, CreditNote, CreditNoteItem, Invoice
from django_invoice_ledger.money import Money
from django_invoice_ledger.numbering import next_document_number
from django_invoice_ledger.selectors import (
    get_invoice,
    get_invoice_for_update,
    get_invoice_totals,
    invoice_pk,
)


logger = logging.getLogger(__name__)


def _single_vat_rate(rates: Iterable[Decimal], source: str) -> Decimal:
    distinct = {Decimal(str(rate)).normalize() for rate in rates}
    if len(distinct) > 1:
        raise ValidationError(
            f"{source} uses several VAT rates; pass vat_rate explicitly",
            field='vat_rate',
        )
    return distinct.pop() if distinct else Decimal('0')


def invoice_vat_rate(invoice: Invoice) -> Decimal:
    """Return the single VAT rate used by an invoice's lines.

    Raises:
        ValidationError: If the lines use more than one rate
    """
    return _single_vat_rate(
        invoice.line_items.values_list('vat_rate', flat=True),
        f"Invoice {invoice.invoice_number}",
    )


@transaction.atomic
def create_credit_note(
    invoice,
    *,
    reason: str,
    amount=None,
    vat_rate=None,
    items: Optional[Iterable] = None,
    issue_date: Optional[date] = None,
    actor=None,
    expected_version: Optional[int] = None,
    today: Optional[date] = None,
) -> CreditNote:
    """
    Create a credit note against an issued invoice and recompute its status.

    Credit notes may take the balance below zero; the surplus is a credit
    balance in the customer's favour.

    Args:
        invoice: Invoice instance or id
        reason: Why the credit is given (required)
        amount: Net amount; defaults to the sum of the item line totals
        vat_rate: Defaults to the single rate of the items, else of the invoice
        items: Optional credit note line items
        issue_date: Defaults to today
        actor: User creating the credit note
        expected_version: Optional optimistic-concurrency token
        today: Reference date for the overdue status

    Returns:
        The created CreditNote

    Raises:
        ValidationError: Empty reason, non-finite or non-positive amount, bad VAT rate or mixed rates
        InvalidStateError: If the invoice is a draft
        InconsistentBalanceError: If expected_version is stale
        NotFoundError: If the invoice does not exist
    """
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError("A credit note requires a reason", field='reason')
    cleaned_items = clean_line_items(items or [])

    locked = get_invoice_for_update(invoice_pk(invoice))
    if not locked.is_issued:
        raise InvalidStateError("Credit notes can only be created against issued invoices")
    check_expected_version(locked, expected_version)

    if amount is None:
        if not cleaned_items:
            raise ValidationError("Provide an amount or line items", field='amount')
        amount = sum(
            (item['quantity'] * item['unit_price_amount'] for item in cleaned_items),
            Decimal('0'),
        )
    net = Money(to_decimal(amount, 'amount'), locked.currency).quantized()
    if not net.is_positive():
        raise ValidationError("Credit note amount must be greater than zero", field='amount')

    if vat_rate is None:
        if cleaned_items:
            vat_rate = _single_vat_rate((item['vat_rate'] for item in cleaned_items), "Credit note items")
        else:
            vat_rate = invoice_vat_rate(locked)
    vat_rate = to_decimal(vat_rate, 'vat_rate')
    if not Decimal('0') <= vat_rate <= Decimal('1'):
        raise ValidationError("VAT rate must be a fraction between 0 and 1", field='vat_rate')

    issue_date = issue_date or timezone.localdate()
    credit_note = CreditNote.objects.create(
        owner_id=locked.owner_id,
        customer_id=locked.customer_id,
        invoice=locked,
        credit_note_number=next_document_number('credit_note', owner=locked.owner, year=issue_date.year),
        amount=net.amount,
        vat_rate=vat_rate,
        currency=locked.currency,
        reason=reason,
        issue_date=issue_date,
        created_by=actor,
    )
    for position, item in enumerate(cleaned_items):
        CreditNoteItem.objects.create(credit_note=credit_note, position=position, **item)

    record_audit_entry(
        locked,
        AuditAction.CREDIT_NOTE_CREATED,
        actor=actor,
        new_data={
            'credit_note_number': credit_note.credit_note_number,
            'amount': net.amount,
            'gross_amount': credit_note.gross_amount,
            'reason': reason,
        },
    )
    settlement = recalculate_status(locked, today=today)

    logger.info(
        f"Created credit note {credit_note.credit_note_number} ({credit_note.gross}) "
        f"against invoice {locked.invoice_number}, status {settlement.status}"
    )
    return credit_note


def create_full_credit_note(invoice, *, actor=None, issue_date: Optional[date] = None, today=None) -> CreditNote:
    """
    Credit an invoice in full.

    Credits the taxable amount at the invoice's VAT rate, so the credit
    note's gross equals the invoice's grand total. Line items are copied.

    Raises:
        ValidationError: If the invoice mixes VAT rates
        InvalidStateError: If the invoice is a draft
    """
    invoice = get_invoice(invoice_pk(invoice))
    if not invoice.is_issued:
        raise InvalidStateError("Credit notes can only be created against issued invoices")

    totals = get_invoice_totals(invoice)
    return create_credit_note(
        invoice,
        reason=f"Full credit for invoice {invoice.invoice_number}",
        amount=totals.taxable_amount.amount,
        vat_rate=invoice_vat_rate(invoice),
        items=invoice.line_items.order_by('position', 'created_at'),
        issue_date=issue_date,
        actor=actor,
        today=today,
    )
