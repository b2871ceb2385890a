"""Quotation lifecycle.

draft -> sent -> accepted -> converted, and draft|sent -> expired once
valid_until has passed. Quotations are not subject to the immutability
rules of invoices; converting one creates a draft invoice.
"""

import logging
from datetime import date
from typing import Iterable, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.utils import timezone

from django_invoice_ledger.calculator import (
    Discount,
    DocumentTotals,
    calculate_totals,
    clean_line_items,
    validate_discount,
)
from django_invoice_ledger.conf import get_currency
from django_invoice_ledger.exceptions import InvalidStateError, NotFoundError, ValidationError
from django_invoice_ledger.issuance import create_invoice
from django_invoice_ledger.models import Invoice, Quotation, QuotationItem, QuotationStatus
from django_invoice_ledger.numbering import next_document_number
from django_invoice_ledger.selectors import get_customer_for_owner


logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = (QuotationStatus.DRAFT, QuotationStatus.SENT)


def _lock_quotation(quotation) -> Quotation:
    quotation_id = quotation.pk if isinstance(quotation, Quotation) else quotation
    try:
        return Quotation.objects.select_for_update().get(pk=quotation_id)
    except (Quotation.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError('Quotation', quotation_id)


def _transition(quotation, allowed_from, to_status: str) -> Quotation:
    with transaction.atomic():
        locked = _lock_quotation(quotation)
        if locked.status not in allowed_from:
            raise InvalidStateError(
                f"Quotation {locked.quotation_number} is {locked.status}, cannot mark it {to_status}"
            )
        locked.status = to_status
        locked.save(update_fields=['status', 'updated_at'])
    return locked


def quotation_totals(quotation: Quotation) -> DocumentTotals:
    """Compute a quotation's totals from its items."""
    return calculate_totals(quotation.items.all(), quotation.discount, currency=quotation.currency)


@transaction.atomic
def create_quotation(
    owner,
    customer,
    items: Iterable,
    *,
    issue_date: Optional[date] = None,
    valid_until: Optional[date] = None,
    discount: Optional[Discount] = None,
    currency: Optional[str] = None,
    notes: str = '',
) -> Quotation:
    """
    Create a draft quotation with a QUO- number.

    Raises:
        ValidationError: On invalid items, discount or validity window
        NotFoundError: If the customer does not exist for the owner
    """
    discount = discount or Discount()
    validate_discount(discount)
    cleaned_items = clean_line_items(items)
    issue_date = issue_date or timezone.localdate()
    if valid_until is not None and valid_until < issue_date:
        raise ValidationError("valid_until cannot be before the issue date", field='valid_until')
    customer = get_customer_for_owner(owner, customer)

    quotation = Quotation.objects.create(
        owner=owner,
        customer=customer,
        quotation_number=next_document_number('quotation', owner=owner, year=issue_date.year),
        issue_date=issue_date,
        valid_until=valid_until,
        currency=currency or get_currency(),
        discount_type=discount.type,
        discount_value=discount.value,
        notes=notes,
    )
    for position, item in enumerate(cleaned_items):
        QuotationItem.objects.create(quotation=quotation, position=position, **item)
    return quotation


def mark_quotation_sent(quotation) -> Quotation:
    """draft -> sent"""
    return _transition(quotation, (QuotationStatus.DRAFT,), QuotationStatus.SENT)


def accept_quotation(quotation) -> Quotation:
    """sent -> accepted"""
    return _transition(quotation, (QuotationStatus.SENT,), QuotationStatus.ACCEPTED)


def expire_quotations(today: Optional[date] = None, owner=None) -> List[Quotation]:
    """
    Mark draft and sent quotations whose validity has passed as expired.

    Returns:
        The quotations that were expired
    """
    today = today or timezone.localdate()
    qs = Quotation.objects.filter(status__in=EXPIRABLE_STATUSES, valid_until__lt=today)
    if owner is not None:
        qs = qs.for_owner(owner)

    expired = []
    with transaction.atomic():
        for quotation in qs.select_for_update():
            quotation.status = QuotationStatus.EXPIRED
            quotation.save(update_fields=['status', 'updated_at'])
            expired.append(quotation)

    if expired:
        logger.info(f"Expired {len(expired)} quotations past their validity")
    return expired


def convert_quotation_to_invoice(
    quotation,
    *,
    actor=None,
    issue_date: Optional[date] = None,
    due_date: Optional[date] = None,
) -> Invoice:
    """
    Convert a quotation into a draft invoice carrying its items and discount.

    Raises:
        InvalidStateError: If the quotation is already converted or has expired
    """
    with transaction.atomic():
        locked = _lock_quotation(quotation)
        if locked.status == QuotationStatus.CONVERTED:
            raise InvalidStateError(f"Quotation {locked.quotation_number} has already been converted")
        expired = locked.valid_until is not None and locked.valid_until < timezone.localdate()
        if locked.status == QuotationStatus.EXPIRED or expired:
            raise InvalidStateError(f"Quotation {locked.quotation_number} has expired")

        invoice = create_invoice(
            locked.owner,
            locked.customer_id,
            locked.items.order_by('position', 'created_at'),
            issue_date=issue_date,
            due_date=due_date,
            discount=locked.discount,
            currency=locked.currency,
            notes=locked.notes,
            actor=actor,
        )
        locked.status = QuotationStatus.CONVERTED
        locked.converted_invoice = invoice
        locked.converted_at = timezone.now()
        locked.save(update_fields=['status', 'converted_invoice', 'converted_at', 'updated_at'])

    logger.info(f"Converted quotation {locked.quotation_number} into invoice {invoice.pk}")
    return invoice
