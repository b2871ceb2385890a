"""Ledger facade: the single entry point for balances, timelines and mutations.

Callers never recompute a balance themselves; they ask the facade, which
loads one consistent snapshot and runs the settlement calculator over it.

    from django_invoice_ledger import ledger

    view = ledger.get_settlement(invoice_id, owner=request.user)
    view.remaining_balance   # Money('182.00', 'EUR')
    view.status              # 'partially_paid'

All functions accept an optional `owner`; when given, invoices of other
tenants raise NotFoundError as if they did not exist.
"""

import logging
from datetime import date
from typing import List, NamedTuple, Optional

from django.db import transaction

from django_invoice_ledger.audit import get_invoice_audit_trail
from django_invoice_ledger.credit_notes import create_credit_note
from django_invoice_ledger.issuance import add_correction_note as _add_correction_note
from django_invoice_ledger.issuance import apply_settlement_status, issue_invoice
from django_invoice_ledger.models import AuditEntry, CreditNote, Invoice, Payment
from django_invoice_ledger.payments import record_payment
from django_invoice_ledger.selectors import (
    get_invoice,
    get_invoice_for_update,
    get_invoice_ledger_data,
    get_invoice_totals,
)
from django_invoice_ledger.settlement import SettlementView, calculate_invoice_settlement
from django_invoice_ledger.timeline import TimelineEvent, build_timeline


logger = logging.getLogger(__name__)


class StatusChange(NamedTuple):
    """A stored status that was (or would be) rewritten."""

    invoice_id: object
    invoice_number: str
    old_status: str
    new_status: str


# =============================================================================
# Reads
# =============================================================================


def get_settlement(invoice_id, owner=None, *, today: Optional[date] = None) -> SettlementView:
    """Return the canonical SettlementView of an invoice."""
    data = get_invoice_ledger_data(invoice_id, owner)
    return calculate_invoice_settlement(
        data.invoice,
        data.totals.grand_total,
        data.credit_notes,
        data.payments,
        today=today,
    )


def get_timeline(invoice_id, owner=None, *, today: Optional[date] = None) -> List[TimelineEvent]:
    """Return an invoice's activity timeline, oldest event first."""
    data = get_invoice_ledger_data(invoice_id, owner)
    payments = sorted(data.payments, key=lambda p: p.created_at)
    return build_timeline(
        data.invoice,
        data.credit_notes,
        payments,
        data.audit_entries,
        gross_total=data.totals.grand_total,
        today=today,
    )


def get_audit_trail(invoice_id, owner=None) -> List[AuditEntry]:
    """Return an invoice's audit entries, oldest first."""
    invoice = get_invoice(invoice_id, owner)
    return get_invoice_audit_trail(invoice)


# =============================================================================
# Mutations
# =============================================================================


def issue(invoice_id, actor=None, owner=None, *, expected_version: Optional[int] = None) -> Invoice:
    """Issue a draft invoice. See issuance.issue_invoice()."""
    invoice = get_invoice(invoice_id, owner)
    return issue_invoice(invoice, actor, expected_version=expected_version)


def add_payment(invoice_id, amount, owner=None, **kwargs) -> Payment:
    """Record a payment. See payments.record_payment() for keyword arguments."""
    invoice = get_invoice(invoice_id, owner)
    return record_payment(invoice, amount, **kwargs)


def add_credit_note(invoice_id, owner=None, **kwargs) -> CreditNote:
    """Create a credit note. See credit_notes.create_credit_note() for keyword arguments."""
    invoice = get_invoice(invoice_id, owner)
    return create_credit_note(invoice, **kwargs)


def add_correction_note(invoice_id, note: str, actor=None, owner=None) -> AuditEntry:
    """Append a correction note to an issued invoice."""
    invoice = get_invoice(invoice_id, owner)
    return _add_correction_note(invoice, note, actor=actor)


# =============================================================================
# Status maintenance
# =============================================================================


def _settle_locked(invoice: Invoice, today: Optional[date]) -> SettlementView:
    return calculate_invoice_settlement(
        invoice,
        get_invoice_totals(invoice).grand_total,
        invoice.credit_notes.all(),
        invoice.payments.all(),
        today=today,
    )


def refresh_status(invoice_id, owner=None, *, today: Optional[date] = None) -> SettlementView:
    """
    Recompute an invoice's settlement and rewrite its stored status if it drifted.

    Drafts are never written.
    """
    with transaction.atomic():
        locked = get_invoice_for_update(invoice_id, owner)
        settlement = _settle_locked(locked, today)
        if locked.is_issued and locked.status != settlement.status:
            logger.debug(f"Invoice {locked.pk} status {locked.status} -> {settlement.status}")
            apply_settlement_status(locked, settlement)
    return settlement


def refresh_overdue_statuses(
    owner=None,
    *,
    today: Optional[date] = None,
    dry_run: bool = False,
) -> List[StatusChange]:
    """
    Recompute stored statuses of issued, unsettled invoices.

    Mostly moves invoices whose due date has passed to `overdue`.

    Args:
        owner: Restrict to one tenant
        today: Reference date (defaults to the local date)
        dry_run: Report changes without writing them

    Returns:
        The status changes applied (or that would be applied)
    """
    qs = Invoice.objects.unsettled()
    if owner is not None:
        qs = qs.for_owner(owner)

    changes = []
    for invoice_id in qs.order_by('issue_date', 'created_at').values_list('pk', flat=True):
        with transaction.atomic():
            locked = get_invoice_for_update(invoice_id)
            settlement = _settle_locked(locked, today)
            if settlement.status == locked.status:
                continue
            changes.append(StatusChange(
                invoice_id=locked.pk,
                invoice_number=locked.invoice_number,
                old_status=locked.status,
                new_status=settlement.status,
            ))
            if not dry_run:
                apply_settlement_status(locked, settlement)

    if changes and not dry_run:
        logger.info(f"Refreshed status of {len(changes)} invoices")
    return changes
