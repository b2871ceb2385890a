"""Integrity hashing for issued invoices.

At issuance the frozen content of an invoice (number, dates, customer,
currency, discount, line items and totals) is serialized to canonical JSON
and hashed with SHA-256. Recomputing the hash later detects rows that were
changed behind the ORM's back.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from django_invoice_ledger.calculator import DocumentTotals
from django_invoice_ledger.selectors import get_invoice_totals


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntegrityReport:
    """Result of verifying an invoice's integrity hash."""

    is_valid: bool
    stored_hash: str
    calculated_hash: str


def _fixed(value, places: int) -> str:
    """Render a decimal with a fixed number of places, independent of storage scale."""
    return str(Decimal(str(value)).quantize(Decimal(10) ** -places))


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def canonical_invoice_content(invoice, line_items: Iterable, totals: DocumentTotals) -> dict:
    """Build the dict that is hashed for an invoice."""
    return {
        'invoice_number': invoice.invoice_number,
        'customer_id': str(invoice.customer_id),
        'issue_date': _iso(invoice.issue_date),
        'due_date': _iso(invoice.due_date),
        'currency': invoice.currency,
        'discount': {
            'type': str(invoice.discount_type),
            'value': _fixed(invoice.discount_value, 4),
        },
        'items': [
            {
                'description': item.description,
                'quantity': _fixed(item.quantity, 3),
                'unit_price': _fixed(item.unit_price_amount, 4),
                'vat_rate': _fixed(item.vat_rate, 4),
                'unit': item.unit,
            }
            for item in line_items
        ],
        'totals': {
            'subtotal': str(totals.subtotal.quantized().amount),
            'discount': str(totals.discount_amount.quantized().amount),
            'taxable': str(totals.taxable_amount.quantized().amount),
            'vat': str(totals.vat_total.quantized().amount),
            'total': str(totals.grand_total.quantized().amount),
        },
    }


def compute_invoice_hash(invoice, line_items: Iterable, totals: DocumentTotals) -> str:
    """
    Compute the SHA-256 hex digest of an invoice's frozen content.

    Deterministic: the same content always yields the same hash.

    Args:
        invoice: The invoice (number and dates must already be final)
        line_items: Its line items, in display order
        totals: Its totals

    Returns:
        64-character hex digest
    """
    content = canonical_invoice_content(invoice, line_items, totals)
    payload = json.dumps(content, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def verify_invoice_integrity(invoice) -> IntegrityReport:
    """
    Recompute an invoice's hash and compare it with the stored one.

    A draft has no stored hash and is reported invalid.

    Usage:
        report = verify_invoice_integrity(invoice)
        if not report.is_valid:
            ...
    """
    line_items = list(invoice.line_items.order_by('position', 'created_at'))
    calculated = compute_invoice_hash(invoice, line_items, get_invoice_totals(invoice))
    stored = invoice.integrity_hash or ''
    is_valid = bool(stored) and stored == calculated

    if stored and not is_valid:
        logger.warning(
            f"Integrity hash mismatch for invoice {invoice.invoice_number} ({invoice.pk})"
        )

    return IntegrityReport(is_valid=is_valid, stored_hash=stored, calculated_hash=calculated)
