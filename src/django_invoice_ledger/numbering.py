"""Document number allocation."""

from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from django_invoice_ledger.conf import get_number_pad_width, get_number_prefix
from django_invoice_ledger.models import DocumentSequence


def _lock_sequence(scope: str, owner, year: int) -> DocumentSequence:
    return DocumentSequence.objects.select_for_update().get(scope=scope, owner=owner, year=year)


def next_document_number(scope: str, owner, year: Optional[int] = None) -> str:
    """
    Allocate the next document number atomically.

    Uses select_for_update() so concurrent allocations for the same
    scope/owner/year serialize on the sequence row and never collide.
    When two first allocations race to create the row, the loser's insert
    fails on the unique constraint and it locks the winner's row instead.

    Args:
        scope: 'invoice', 'credit_note' or 'quotation'
        owner: The tenant the number belongs to
        year: Numbering year (defaults to the current year)

    Returns:
        The formatted number, e.g. "INV-2026-0001"

    Usage:
        invoice.invoice_number = next_document_number('invoice', owner=user)
    """
    if year is None:
        year = timezone.localdate().year

    with transaction.atomic():
        try:
            seq = _lock_sequence(scope, owner, year)
        except DocumentSequence.DoesNotExist:
            try:
                with transaction.atomic():
                    DocumentSequence.objects.create(
                        scope=scope,
                        owner=owner,
                        year=year,
                        prefix=get_number_prefix(scope),
                        pad_width=get_number_pad_width(),
                        current_value=0,
                    )
            except IntegrityError:
                # Another allocation created it first
                pass
            seq = _lock_sequence(scope, owner, year)

        seq.current_value += 1
        seq.save(update_fields=['current_value', 'updated_at'])

        return seq.formatted_value
