"""Invoice selectors for read-only queries.

Loads an invoice with everything the ledger needs in a fixed number of
queries (select_related/prefetch_related), and resolves its totals from
the stored InvoiceTotals row or, when absent, from its line items.
"""

from typing import List, NamedTuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Prefetch

from .calculator import DocumentTotals, calculate_totals
from .exceptions import NotFoundError
from .models import (
    AuditEntry,
    CreditNote,
    Customer,
    Invoice,
    InvoiceLineItem,
    InvoiceTotals,
    Payment,
)
from .money import Money


class InvoiceLedgerData(NamedTuple):
    """An invoice snapshot plus the documents that settle it."""

    invoice: Invoice
    totals: DocumentTotals
    credit_notes: List[CreditNote]
    payments: List[Payment]
    audit_entries: List[AuditEntry]


def invoice_pk(invoice_or_id):
    """Accept an Invoice or its primary key."""
    return invoice_or_id.pk if isinstance(invoice_or_id, Invoice) else invoice_or_id


def _invoice_queryset(owner=None):
    qs = Invoice.objects.all()
    if owner is not None:
        qs = qs.for_owner(owner)
    return qs


def get_invoice(invoice_id, owner=None) -> Invoice:
    """Fetch an invoice by id, optionally scoped to an owner.

    Raises:
        NotFoundError: If no such invoice exists for the owner
    """
    try:
        return _invoice_queryset(owner).select_related('customer').get(pk=invoice_pk(invoice_id))
    except (Invoice.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError('Invoice', invoice_id)


def get_invoice_for_update(invoice_id, owner=None) -> Invoice:
    """Fetch and row-lock an invoice. Call inside transaction.atomic().

    Raises:
        NotFoundError: If no such invoice exists for the owner
    """
    try:
        return _invoice_queryset(owner).select_for_update().get(pk=invoice_pk(invoice_id))
    except (Invoice.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError('Invoice', invoice_id)


def get_customer_for_owner(owner, customer) -> Customer:
    """Fetch a customer (instance or id) that belongs to the owner.

    Raises:
        NotFoundError: If the customer does not exist or belongs to another owner
    """
    customer_id = customer.pk if isinstance(customer, Customer) else customer
    try:
        return Customer.objects.for_owner(owner).get(pk=customer_id)
    except (Customer.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError('Customer', customer_id)


def calculate_invoice_totals(invoice: Invoice) -> DocumentTotals:
    """Recompute an invoice's totals from its line items."""
    return calculate_totals(
        invoice.line_items.all(),
        invoice.discount,
        currency=invoice.currency,
    )


def get_invoice_totals(invoice: Invoice) -> DocumentTotals:
    """Return the stored totals when present, else recompute from line items."""
    try:
        stored = invoice.stored_totals
    except InvoiceTotals.DoesNotExist:
        return calculate_invoice_totals(invoice)

    currency = invoice.currency
    return DocumentTotals(
        subtotal=Money(stored.subtotal_amount, currency).quantized(),
        discount_amount=Money(stored.discount_amount, currency).quantized(),
        taxable_amount=Money(stored.taxable_amount, currency).quantized(),
        vat_total=Money(stored.vat_amount, currency).quantized(),
        grand_total=Money(stored.total_amount, currency).quantized(),
    )


def get_invoice_ledger_data(invoice_id, owner=None) -> InvoiceLedgerData:
    """Load an invoice with its line items, totals, credit notes, payments and audit trail.

    Raises:
        NotFoundError: If no such invoice exists for the owner
    """
    try:
        invoice = (
            _invoice_queryset(owner)
            .select_related('customer', 'stored_totals')
            .prefetch_related(
                Prefetch('line_items', queryset=InvoiceLineItem.objects.order_by('position', 'created_at')),
                Prefetch('credit_notes', queryset=CreditNote.objects.order_by('issue_date', 'created_at')),
                Prefetch('payments', queryset=Payment.objects.order_by('payment_date', 'created_at')),
                Prefetch('audit_entries', queryset=AuditEntry.objects.order_by('timestamp', 'id')),
            )
            .get(pk=invoice_pk(invoice_id))
        )
    except (Invoice.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError('Invoice', invoice_id)

    return InvoiceLedgerData(
        invoice=invoice,
        totals=get_invoice_totals(invoice),
        credit_notes=list(invoice.credit_notes.all()),
        payments=list(invoice.payments.all()),
        audit_entries=list(invoice.audit_entries.all()),
    )
