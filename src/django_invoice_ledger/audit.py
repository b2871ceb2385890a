"""Audit trail recording for invoices.

The audit trail is the compliance record: an append-only sequence of
lifecycle events per invoice, ordered by timestamp. Only the issuance
state machine writes to it; everything else reads.

    from django_invoice_ledger.audit import get_invoice_audit_trail

    for entry in get_invoice_audit_trail(invoice):
        print(entry.timestamp, entry.action, entry.new_data)
"""

from decimal import Decimal
from typing import Any, List, Optional

from django.db.models import Model

from .models import AuditAction, AuditEntry, Invoice


def _get_actor_display(actor):
    """Get display string for actor."""
    if not actor:
        return ''
    if getattr(actor, 'email', None):
        return actor.email
    if getattr(actor, 'username', None):
        return actor.username
    return str(actor)


def _to_json(value: Any) -> Any:
    """Convert Decimals, dates, UUIDs and models to JSON-safe values."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, dict):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, Model):
        return str(value.pk)
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)


def record_audit_entry(
    invoice: Invoice,
    action: str,
    actor=None,
    prior_data: Optional[dict] = None,
    new_data: Optional[dict] = None,
) -> AuditEntry:
    """Append an audit entry for an invoice.

    Must be called inside the transaction of the mutation it records, so
    that a rolled-back mutation leaves no entry behind.

    Args:
        invoice: The invoice the event concerns
        action: One of AuditAction
        actor: User who performed the action (None for system actions)
        prior_data: State before the event, if relevant
        new_data: State introduced by the event

    Returns:
        The created AuditEntry
    """
    if action not in AuditAction.values:
        raise ValueError(f"Unknown audit action: {action!r}")

    return AuditEntry.objects.create(
        invoice=invoice,
        action=action,
        actor=actor,
        actor_display=_get_actor_display(actor)[:200],
        prior_data=_to_json(prior_data),
        new_data=_to_json(new_data),
    )


def get_invoice_audit_trail(invoice) -> List[AuditEntry]:
    """Return an invoice's audit entries, oldest first.

    Args:
        invoice: An Invoice instance or its primary key
    """
    invoice_id = invoice.pk if isinstance(invoice, Invoice) else invoice
    return list(
        AuditEntry.objects.filter(invoice_id=invoice_id)
        .select_related('actor')
        .order_by('timestamp', 'id')
    )
