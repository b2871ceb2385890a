"""Activity timeline: a read-only chronological merge of everything that happened to an invoice.

build_timeline() is pure. Given the same invoice, credit notes, payments
and audit entries it returns the same ordered events, so it can run on any
thread and be recomputed at will.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timezone as dt_timezone
from typing import Iterable, List, Optional

from django.db import models
from django.utils import timezone

from django_invoice_ledger.models import AuditAction, InvoiceStatus, PaymentMethod
from django_invoice_ledger.money import Money
from django_invoice_ledger.settlement import calculate_invoice_settlement


class TimelineEventKind(models.TextChoices):
    CREATED = 'created', 'Created'
    ISSUED = 'issued', 'Issued'
    CORRECTION_NOTE = 'correction_note', 'Correction note'
    CREDIT_NOTE = 'credit_note', 'Credit note'
    PAYMENT = 'payment', 'Payment'
    PAID = 'paid', 'Paid'


# Same-day events follow the lifecycle order; date-only documents sit at midnight.
KIND_ORDER = {
    TimelineEventKind.CREATED: 0,
    TimelineEventKind.ISSUED: 1,
    TimelineEventKind.CORRECTION_NOTE: 2,
    TimelineEventKind.CREDIT_NOTE: 2,
    TimelineEventKind.PAYMENT: 2,
    TimelineEventKind.PAID: 3,
}


@dataclass(frozen=True)
class TimelineEvent:
    """One entry of an invoice's activity timeline."""

    id: str
    kind: str
    date: datetime
    title: str
    amount: Optional[Money] = None
    detail: str = ''

    def as_dict(self) -> dict:
        return {
            'id': self.id,
            'kind': str(self.kind),
            'date': self.date.isoformat(),
            'title': self.title,
            'amount': str(self.amount.amount) if self.amount is not None else None,
            'currency': self.amount.currency if self.amount is not None else None,
            'detail': self.detail,
        }


def _as_datetime(value) -> datetime:
    """Normalize dates and naive datetimes to aware UTC datetimes."""
    if isinstance(value, datetime):
        if timezone.is_naive(value):
            return value.replace(tzinfo=dt_timezone.utc)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=dt_timezone.utc)
    raise TypeError(f"Cannot place {value!r} on a timeline")


def _first_entry(audit_entries, action):
    for entry in audit_entries:
        if entry.action == action:
            return entry
    return None


def build_timeline(
    invoice,
    credit_notes: Iterable,
    payments: Iterable,
    audit_entries: Iterable,
    *,
    gross_total: Money,
    today: Optional[date] = None,
) -> List[TimelineEvent]:
    """
    Merge an invoice's lifecycle into events sorted ascending by date.

    Created and issued dates come from the audit trail when it has them,
    else from the invoice. A synthetic `paid` event is added when the
    invoice is settled and at least one payment exists; it takes the
    latest payment date, and among payments sharing that date the one
    inserted last.

    Args:
        invoice: The invoice
        credit_notes: Its credit notes
        payments: Its payments, in insertion order
        audit_entries: Its audit trail, oldest first
        gross_total: The invoice's grand total
        today: Reference date for the settlement status

    Returns:
        Events sorted by day, then lifecycle stage (created, issued, notes and
        settlements, paid), then time; exact ties keep generation order
    """
    credit_notes = list(credit_notes)
    payments = list(payments)
    audit_entries = list(audit_entries)
    currency = gross_total.currency
    events = []

    created = _first_entry(audit_entries, AuditAction.CREATED)
    events.append(TimelineEvent(
        id=f"created-{invoice.pk}",
        kind=TimelineEventKind.CREATED,
        date=_as_datetime(created.timestamp if created else invoice.created_at),
        title="Invoice created",
    ))

    if invoice.is_issued:
        issued = _first_entry(audit_entries, AuditAction.ISSUED)
        events.append(TimelineEvent(
            id=f"issued-{invoice.pk}",
            kind=TimelineEventKind.ISSUED,
            date=_as_datetime(issued.timestamp if issued else invoice.issued_at),
            title=f"Invoice {invoice.invoice_number} issued",
            amount=gross_total,
        ))

    for entry in audit_entries:
        if entry.action != AuditAction.CORRECTION_NOTE_ADDED:
            continue
        events.append(TimelineEvent(
            id=f"correction-{entry.pk}",
            kind=TimelineEventKind.CORRECTION_NOTE,
            date=_as_datetime(entry.timestamp),
            title="Correction note added",
            detail=(entry.new_data or {}).get('note', ''),
        ))

    for credit_note in credit_notes:
        events.append(TimelineEvent(
            id=f"credit-note-{credit_note.pk}",
            kind=TimelineEventKind.CREDIT_NOTE,
            date=_as_datetime(credit_note.issue_date),
            title=f"Credit note {credit_note.credit_note_number}",
            amount=Money(credit_note.gross_amount, currency),
            detail=credit_note.reason,
        ))

    for payment in payments:
        events.append(TimelineEvent(
            id=f"payment-{payment.pk}",
            kind=TimelineEventKind.PAYMENT,
            date=_as_datetime(payment.payment_date),
            title=f"Payment received ({PaymentMethod(payment.method).label})",
            amount=Money(payment.amount, currency).quantized(),
            detail=payment.reference,
        ))

    settlement = calculate_invoice_settlement(invoice, gross_total, credit_notes, payments, today=today)
    if settlement.status == InvoiceStatus.PAID and payments:
        _, last_payment = max(
            enumerate(payments),
            key=lambda indexed: (indexed[1].payment_date, indexed[0]),
        )
        events.append(TimelineEvent(
            id=f"paid-{invoice.pk}",
            kind=TimelineEventKind.PAID,
            date=_as_datetime(last_payment.payment_date),
            title="Invoice paid in full",
            amount=settlement.total_payments,
        ))

    events.sort(key=lambda event: (event.date.date(), KIND_ORDER[event.kind], event.date))
    return events
