"""Invoice issuance state machine.

Draft -> Issued is the only transition, and it is one-way. While draft an
invoice is freely editable; issuing it assigns a number, freezes its line
items, discount, dates and totals, stores an integrity hash and writes an
`issued` audit entry. After that the only writes are payments, credit
notes, correction notes and status recalculation.

Every mutation runs inside transaction.atomic() with the invoice row
locked (select_for_update), so a failure leaves neither an audit entry nor
a status change behind.
"""

import logging
from datetime import date
from typing import Iterable, Optional, Tuple

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from django_invoice_ledger.audit import record_audit_entry
from django_invoice_ledger.calculator import (
    Discount,
    calculate_totals,
    clean_line_items,
    validate_discount,
)
from django_invoice_ledger.conf import get_currency
from django_invoice_ledger.exceptions import (
    ImmutableDocumentError,
    InconsistentBalanceError,
    InvalidStateError,
    ValidationError,
)
from django_invoice_ledger.integrity import compute_invoice_hash
from django_invoice_ledger.models import (
    AuditAction,
    AuditEntry,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceTotals,
)
from django_invoice_ledger.numbering import next_document_number
from django_invoice_ledger.selectors import (
    get_customer_for_owner,
    get_invoice_for_update,
    get_invoice_totals,
    invoice_pk,
)
from django_invoice_ledger.settlement import SettlementView, calculate_invoice_settlement


logger = logging.getLogger(__name__)

EDITABLE_DRAFT_FIELDS = ('customer', 'invoice_number', 'issue_date', 'due_date', 'currency', 'notes')

IMMUTABLE_REASON = "Invoice has been issued and cannot be modified. Create a credit note instead."


def _check_dates(issue_date: date, due_date: Optional[date]) -> None:
    if due_date is not None and issue_date is not None and due_date < issue_date:
        raise ValidationError("Due date cannot be before the issue date", field='due_date')


def _create_line_items(invoice: Invoice, items: Iterable[dict]) -> None:
    for position, item in enumerate(items):
        InvoiceLineItem.objects.create(invoice=invoice, position=position, **item)


def check_expected_version(invoice: Invoice, expected_version: Optional[int]) -> None:
    """Raise InconsistentBalanceError if the caller's version token is stale."""
    if expected_version is not None and invoice.version != expected_version:
        logger.warning(
            f"Version conflict on invoice {invoice.pk}: "
            f"expected {expected_version}, found {invoice.version}"
        )
        raise InconsistentBalanceError(
            f"Invoice {invoice.pk} was modified concurrently "
            f"(expected version {expected_version}, found {invoice.version}). Retry the operation.",
            expected_version=expected_version,
            actual_version=invoice.version,
        )


# =============================================================================
# Edit guards
# =============================================================================


def assert_mutable(invoice: Invoice) -> None:
    """
    Raise ImmutableDocumentError if the invoice has been issued.

    Call before any change to line items, discount or dates.
    """
    if invoice.is_issued:
        raise ImmutableDocumentError(
            f"Invoice {invoice.invoice_number} has been issued and cannot be modified. "
            "Create a credit note instead."
        )


def can_edit_invoice(invoice: Invoice) -> Tuple[bool, str]:
    """Return (can_edit, reason) without raising."""
    if invoice.is_issued:
        return False, IMMUTABLE_REASON
    return True, ''


# =============================================================================
# Drafts
# =============================================================================


def create_invoice(
    owner,
    customer,
    items: Iterable,
    *,
    issue_date: Optional[date] = None,
    due_date: Optional[date] = None,
    discount: Optional[Discount] = None,
    currency: Optional[str] = None,
    notes: str = '',
    actor=None,
) -> Invoice:
    """
    Create a draft invoice with its line items.

    Writes a `created` audit entry in the same transaction.

    Args:
        owner: Tenant the invoice belongs to
        customer: Customer instance or id (must belong to the owner)
        items: Line items (dicts or objects with quantity, unit_price_amount, vat_rate)
        issue_date: Defaults to today
        due_date: Optional payment deadline
        discount: Optional document-level discount
        currency: Defaults to INVOICE_LEDGER_CURRENCY
        notes: Free text
        actor: User creating the invoice

    Returns:
        The draft Invoice

    Raises:
        NotFoundError: If the customer does not exist for the owner
        ValidationError: On invalid items, discount or dates
    """
    discount = discount or Discount()
    validate_discount(discount)
    cleaned_items = clean_line_items(items)
    issue_date = issue_date or timezone.localdate()
    _check_dates(issue_date, due_date)

    with transaction.atomic():
        customer = get_customer_for_owner(owner, customer)
        invoice = Invoice.objects.create(
            owner=owner,
            customer=customer,
            issue_date=issue_date,
            due_date=due_date,
            currency=currency or get_currency(),
            discount_type=discount.type,
            discount_value=discount.value,
            notes=notes,
            created_by=actor,
        )
        _create_line_items(invoice, cleaned_items)
        record_audit_entry(
            invoice,
            AuditAction.CREATED,
            actor=actor,
            new_data={
                'customer_id': customer.pk,
                'issue_date': issue_date,
                'due_date': due_date,
                'currency': invoice.currency,
                'item_count': len(cleaned_items),
            },
        )

    logger.info(f"Created draft invoice {invoice.pk} for customer {customer.pk}")
    return invoice


def update_draft_invoice(
    invoice,
    *,
    items: Optional[Iterable] = None,
    discount: Optional[Discount] = None,
    **fields,
) -> Invoice:
    """
    Update a draft invoice's fields, discount and/or line items.

    `items`, when given, replaces all existing line items.

    Raises:
        ImmutableDocumentError: If the invoice has been issued
        ValidationError: On unknown fields or invalid values
    """
    unknown = set(fields) - set(EDITABLE_DRAFT_FIELDS)
    if unknown:
        raise ValidationError(
            f"Cannot update field(s): {', '.join(sorted(unknown))}",
            field=sorted(unknown)[0],
        )
    if discount is not None:
        validate_discount(discount)
    cleaned_items = clean_line_items(items) if items is not None else None

    with transaction.atomic():
        locked = get_invoice_for_update(invoice_pk(invoice))
        assert_mutable(locked)

        if 'customer' in fields:
            fields['customer'] = get_customer_for_owner(locked.owner, fields['customer'])
        for name, value in fields.items():
            setattr(locked, name, value)
        if discount is not None:
            locked.discount_type = discount.type
            locked.discount_value = discount.value
        _check_dates(locked.issue_date, locked.due_date)
        locked.save()

        if cleaned_items is not None:
            locked.line_items.all().delete()
            _create_line_items(locked, cleaned_items)

    return locked


# =============================================================================
# Issuance
# =============================================================================


def issue_invoice(invoice, actor=None, *, expected_version: Optional[int] = None, today=None) -> Invoice:
    """
    Issue a draft invoice. One-way and exclusive.

    Locks the invoice row, so of two concurrent calls exactly one succeeds
    and exactly one `issued` audit entry is written.

    Args:
        invoice: Invoice instance or id
        actor: User issuing the invoice
        expected_version: Optional optimistic-concurrency token
        today: Reference date for the initial status (defaults to today)

    Returns:
        The issued Invoice

    Raises:
        InvalidStateError: If the invoice is already issued
        ValidationError: If the invoice has no line items
        InconsistentBalanceError: If expected_version is stale
        NotFoundError: If the invoice does not exist
    """
    with transaction.atomic():
        locked = get_invoice_for_update(invoice_pk(invoice))
        if locked.is_issued:
            raise InvalidStateError(f"Invoice {locked.invoice_number} is already issued")
        check_expected_version(locked, expected_version)

        line_items = list(locked.line_items.order_by('position', 'created_at'))
        if not line_items:
            raise ValidationError("Cannot issue an invoice without line items", field='line_items')

        if not locked.invoice_number:
            locked.invoice_number = next_document_number(
                'invoice', owner=locked.owner, year=locked.issue_date.year,
            )

        totals = calculate_totals(line_items, locked.discount, currency=locked.currency)
        InvoiceTotals.objects.create(
            invoice=locked,
            subtotal_amount=totals.subtotal.amount,
            discount_amount=totals.discount_amount.amount,
            taxable_amount=totals.taxable_amount.amount,
            vat_amount=totals.vat_total.amount,
            total_amount=totals.grand_total.amount,
        )

        locked.is_issued = True
        locked.issued_at = timezone.now()
        locked.status = calculate_invoice_settlement(locked, totals.grand_total, [], [], today=today).status
        locked.integrity_hash = compute_invoice_hash(locked, line_items, totals)
        locked.version += 1
        locked.save(update_fields=[
            'invoice_number', 'is_issued', 'issued_at', 'status',
            'integrity_hash', 'version', 'updated_at',
        ])

        record_audit_entry(
            locked,
            AuditAction.ISSUED,
            actor=actor,
            prior_data={'status': InvoiceStatus.DRAFT},
            new_data={
                'invoice_number': locked.invoice_number,
                'total_amount': totals.grand_total.amount,
                'customer_id': locked.customer_id,
                'issued_at': locked.issued_at,
            },
        )

    logger.info(f"Issued invoice {locked.invoice_number} ({locked.pk}) total {totals.grand_total}")
    return locked


# =============================================================================
# Status recalculation
# =============================================================================


def apply_settlement_status(
    invoice: Invoice,
    settlement: SettlementView,
    expected_version: Optional[int] = None,
) -> Invoice:
    """
    Write a settlement status with a compare-and-swap on `version`.

    Args:
        invoice: The invoice (its `version` is the expected one unless given)
        settlement: The freshly computed settlement
        expected_version: Overrides invoice.version as the expected token

    Returns:
        The invoice, with status and version updated in memory

    Raises:
        InconsistentBalanceError: If another writer changed the invoice first
    """
    expected = invoice.version if expected_version is None else expected_version
    updated = Invoice.objects.filter(pk=invoice.pk, version=expected).update(
        status=settlement.status,
        version=F('version') + 1,
        updated_at=timezone.now(),
    )
    if not updated:
        actual = Invoice.objects.filter(pk=invoice.pk).values_list('version', flat=True).first()
        logger.warning(
            f"Status write conflict on invoice {invoice.pk}: expected version {expected}, found {actual}"
        )
        raise InconsistentBalanceError(
            f"Invoice {invoice.pk} changed while its status was being recomputed. Retry the operation.",
            expected_version=expected,
            actual_version=actual,
        )

    invoice.status = settlement.status
    invoice.version = expected + 1
    return invoice


def recalculate_status(invoice: Invoice, today=None) -> SettlementView:
    """
    Recompute a locked invoice's settlement from the store and write its status.

    Call inside transaction.atomic() after get_invoice_for_update().
    """
    settlement = calculate_invoice_settlement(
        invoice,
        get_invoice_totals(invoice).grand_total,
        invoice.credit_notes.all(),
        invoice.payments.all(),
        today=today,
    )
    logger.debug(
        f"Invoice {invoice.pk} remaining {settlement.remaining_balance}, status {settlement.status}"
    )
    apply_settlement_status(invoice, settlement)
    return settlement


# =============================================================================
# Correction notes
# =============================================================================


def add_correction_note(invoice, note: str, actor=None) -> AuditEntry:
    """
    Append a correction note to an issued invoice's audit trail.

    Frozen fields are not touched; the note is the record.

    Raises:
        ValidationError: If the note is empty
        InvalidStateError: If the invoice is still a draft
    """
    note = (note or '').strip()
    if not note:
        raise ValidationError("Correction note must not be empty", field='note')

    with transaction.atomic():
        locked = get_invoice_for_update(invoice_pk(invoice))
        if not locked.is_issued:
            raise InvalidStateError("Correction notes can only be added to issued invoices")
        entry = record_audit_entry(
            locked,
            AuditAction.CORRECTION_NOTE_ADDED,
            actor=actor,
            new_data={'note': note},
        )

    logger.info(f"Added correction note to invoice {locked.invoice_number}")
    return entry
