"""Tests for the invoice issuance state machine."""
import uuid
from datetime import date
from decimal import Decimal

import pytest

from django_invoice_ledger.calculator import Discount, DiscountType
from django_invoice_ledger.exceptions import (
    ImmutableDocumentError,
    InconsistentBalanceError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from django_invoice_ledger.issuance import (
    add_correction_note,
    apply_settlement_status,
    assert_mutable,
    can_edit_invoice,
    create_invoice,
    issue_invoice,
    update_draft_invoice,
)
from django_invoice_ledger.models import (
    AuditAction,
    AuditEntry,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceTotals,
)
from django_invoice_ledger.money import Money
from django_invoice_ledger.settlement import calculate_settlement
from tests.factories import line


@pytest.mark.django_db
class TestCreateInvoice:
    """Test suite for draft creation."""

    def test_creates_draft_with_items(self, make_invoice):
        """create_invoice should store a draft and its line items."""
        invoice = make_invoice(items=[line('100.00'), line('50.00', quantity='2')])
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.is_issued is False
        assert invoice.invoice_number == ''
        assert invoice.line_items.count() == 2

    def test_writes_created_audit_entry(self, make_invoice):
        """Creating a draft writes a `created` audit entry."""
        invoice = make_invoice()
        entries = list(invoice.audit_entries.all())
        assert [e.action for e in entries] == [AuditAction.CREATED]
        assert entries[0].new_data['item_count'] == 1

    def test_unknown_customer_raises_not_found(self, user):
        """A customer id that does not exist raises NotFoundError."""
        with pytest.raises(NotFoundError):
            create_invoice(user, uuid.uuid4(), [line('10.00')])

    def test_customer_of_other_tenant_is_not_found(self, other_user, customer):
        """Customers are scoped by owner."""
        with pytest.raises(NotFoundError):
            create_invoice(other_user, customer, [line('10.00')])

    def test_due_date_before_issue_date_rejected(self, make_invoice):
        """Due date must not precede the issue date."""
        with pytest.raises(ValidationError):
            make_invoice(issue_date=date(2026, 3, 10), due_date=date(2026, 3, 1))

    def test_invalid_discount_rejected(self, make_invoice):
        """Percentage discounts over 100 are rejected before storing."""
        with pytest.raises(ValidationError):
            make_invoice(discount=Discount(DiscountType.PERCENT, Decimal('120')))
        assert not Invoice.objects.exists()

    @pytest.mark.parametrize('quantity', ['NaN', 'Infinity'])
    def test_non_finite_quantity_rejected(self, make_invoice, quantity):
        """Line items with NaN or infinite quantities never reach the database."""
        with pytest.raises(ValidationError) as exc_info:
            make_invoice(items=[line('10.00', quantity=quantity)])
        assert exc_info.value.field == 'quantity'
        assert not Invoice.objects.exists()

    def test_default_currency_from_settings(self, make_invoice, settings):
        """New invoices take INVOICE_LEDGER_CURRENCY."""
        settings.INVOICE_LEDGER_CURRENCY = 'GBP'
        assert make_invoice().currency == 'GBP'


@pytest.mark.django_db
class TestIssueInvoice:
    """Test suite for issue_invoice."""

    def test_issue_sets_flags_and_number(self, make_invoice):
        """Issuing sets is_issued, issued_at and assigns an invoice number."""
        invoice = make_invoice(issue=True)
        assert invoice.is_issued is True
        assert invoice.issued_at is not None
        assert invoice.invoice_number == 'INV-2026-0001'
        assert invoice.status == InvoiceStatus.ISSUED

    def test_issue_keeps_existing_number(self, make_invoice):
        """A number given while draft is kept."""
        invoice = make_invoice()
        update_draft_invoice(invoice, invoice_number='2026/A/7')
        assert issue_invoice(invoice, today=date(2026, 3, 1)).invoice_number == '2026/A/7'

    def test_numbers_are_sequential(self, make_invoice):
        """Each issued invoice gets the next number."""
        first = make_invoice(issue=True)
        second = make_invoice(issue=True)
        assert first.invoice_number == 'INV-2026-0001'
        assert second.invoice_number == 'INV-2026-0002'

    def test_issue_writes_audit_entry(self, make_invoice):
        """Issuing writes an `issued` entry carrying the invoice number."""
        invoice = make_invoice(issue=True)
        entry = invoice.audit_entries.get(action=AuditAction.ISSUED)
        assert entry.new_data['invoice_number'] == invoice.invoice_number
        assert entry.new_data['total_amount'] == '100.00'
        assert entry.actor_display == 'owner@example.com'

    def test_issue_stores_totals(self, make_invoice):
        """Issuing freezes an InvoiceTotals row."""
        invoice = make_invoice(
            items=[line('100.00', quantity='2', vat_rate='0.18')],
            discount=Discount(DiscountType.PERCENT, Decimal('10')),
            issue=True,
        )
        totals = InvoiceTotals.objects.get(invoice=invoice)
        assert totals.taxable_amount == Decimal('180.00')
        assert totals.vat_amount == Decimal('32.40')
        assert totals.total_amount == Decimal('212.40')

    def test_issue_stores_integrity_hash(self, make_invoice):
        """Issuing stores a SHA-256 hex digest."""
        invoice = make_invoice(issue=True)
        assert len(invoice.integrity_hash) == 64

    def test_double_issue_raises_and_keeps_audit_trail(self, make_invoice):
        """Issuing twice raises InvalidStateError and writes nothing."""
        invoice = make_invoice(issue=True)
        count = AuditEntry.objects.filter(invoice=invoice).count()

        with pytest.raises(InvalidStateError):
            issue_invoice(invoice)

        assert AuditEntry.objects.filter(invoice=invoice).count() == count

    def test_issue_with_stale_instance_raises(self, make_invoice):
        """A stale in-memory draft cannot be issued twice either."""
        invoice = make_invoice()
        stale = Invoice.objects.get(pk=invoice.pk)
        issue_invoice(invoice, today=date(2026, 3, 1))

        with pytest.raises(InvalidStateError):
            issue_invoice(stale)

    def test_issue_without_items_raises(self, make_invoice):
        """An invoice needs at least one line item to be issued."""
        invoice = make_invoice(items=[])
        with pytest.raises(ValidationError):
            issue_invoice(invoice)
        invoice.refresh_from_db()
        assert invoice.is_issued is False
        assert not AuditEntry.objects.filter(invoice=invoice, action=AuditAction.ISSUED).exists()

    def test_issue_past_due_is_overdue(self, make_invoice):
        """An invoice issued after its due date starts overdue."""
        invoice = make_invoice()
        issued = issue_invoice(invoice, today=date(2026, 4, 15))
        assert issued.status == InvoiceStatus.OVERDUE

    def test_issue_with_stale_version_raises(self, make_invoice):
        """expected_version guards against concurrent edits."""
        invoice = make_invoice()
        with pytest.raises(InconsistentBalanceError):
            issue_invoice(invoice, expected_version=invoice.version + 1)

    def test_issue_missing_invoice(self, db):
        """Issuing an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            issue_invoice(uuid.uuid4())


@pytest.mark.django_db
class TestImmutability:
    """Test suite for the frozen state of issued invoices."""

    def test_update_issued_invoice_raises(self, make_invoice):
        """Draft updates are refused once issued."""
        invoice = make_invoice(issue=True)
        with pytest.raises(ImmutableDocumentError):
            update_draft_invoice(invoice, due_date=date(2026, 5, 1))

    def test_changing_discount_raises(self, make_invoice):
        """The discount is frozen."""
        invoice = make_invoice(issue=True)
        with pytest.raises(ImmutableDocumentError):
            update_draft_invoice(invoice, discount=Discount(DiscountType.AMOUNT, Decimal('5')))

    def test_direct_save_of_frozen_field_raises(self, make_invoice):
        """Saving a changed frozen field through the ORM raises."""
        invoice = make_invoice(issue=True)
        invoice.due_date = date(2026, 6, 30)
        with pytest.raises(ImmutableDocumentError):
            invoice.save()

    def test_saving_notes_is_allowed(self, make_invoice):
        """Non-frozen fields like notes may still be saved."""
        invoice = make_invoice(issue=True)
        invoice.notes = 'Sent by post'
        invoice.save(update_fields=['notes', 'updated_at'])
        invoice.refresh_from_db()
        assert invoice.notes == 'Sent by post'

    def test_line_items_are_frozen(self, make_invoice):
        """Line items of an issued invoice cannot be edited, added or deleted."""
        invoice = make_invoice(issue=True)
        item = invoice.line_items.get()

        item.quantity = Decimal('5')
        with pytest.raises(ImmutableDocumentError):
            item.save()
        with pytest.raises(ImmutableDocumentError):
            item.delete()
        with pytest.raises(ImmutableDocumentError):
            InvoiceLineItem.objects.create(
                invoice=invoice, description='Extra', quantity=1, unit_price_amount=1,
            )

    def test_stored_totals_are_frozen(self, make_invoice):
        """Stored totals cannot be changed or deleted."""
        invoice = make_invoice(issue=True)
        totals = InvoiceTotals.objects.get(invoice=invoice)
        totals.total_amount = Decimal('1')
        with pytest.raises(ImmutableDocumentError):
            totals.save()
        with pytest.raises(ImmutableDocumentError):
            totals.delete()

    def test_invoices_cannot_be_deleted(self, make_invoice):
        """Invoices are permanent records."""
        with pytest.raises(ImmutableDocumentError):
            make_invoice(issue=True).delete()

    def test_assert_mutable(self, make_invoice):
        """assert_mutable passes for drafts and raises once issued."""
        invoice = make_invoice()
        assert_mutable(invoice)
        with pytest.raises(ImmutableDocumentError):
            assert_mutable(issue_invoice(invoice, today=date(2026, 3, 1)))

    def test_can_edit_invoice(self, make_invoice):
        """can_edit_invoice reports the reason instead of raising."""
        invoice = make_invoice()
        assert can_edit_invoice(invoice) == (True, '')

        can_edit, reason = can_edit_invoice(issue_invoice(invoice, today=date(2026, 3, 1)))
        assert can_edit is False
        assert 'credit note' in reason


@pytest.mark.django_db
class TestUpdateDraftInvoice:
    """Test suite for draft editing."""

    def test_replaces_items(self, make_invoice):
        """Passing items replaces the existing line items."""
        invoice = make_invoice(items=[line('10.00'), line('20.00')])
        update_draft_invoice(invoice, items=[line('99.00')])
        assert [i.unit_price_amount for i in invoice.line_items.all()] == [Decimal('99.0000')]

    def test_updates_fields_and_discount(self, make_invoice):
        """Fields and discount of a draft can change."""
        invoice = make_invoice()
        updated = update_draft_invoice(
            invoice,
            notes='Net 30',
            discount=Discount(DiscountType.AMOUNT, Decimal('5.00')),
        )
        assert updated.notes == 'Net 30'
        assert updated.discount_type == DiscountType.AMOUNT

    def test_unknown_field_rejected(self, make_invoice):
        """Only editable fields may be passed."""
        with pytest.raises(ValidationError):
            update_draft_invoice(make_invoice(), status=InvoiceStatus.PAID)


@pytest.mark.django_db
class TestApplySettlementStatus:
    """Test suite for the compare-and-swap status write."""

    def test_writes_status_and_bumps_version(self, make_invoice):
        """A matching version writes the status and increments the version."""
        invoice = make_invoice(issue=True)
        version = invoice.version
        settlement = calculate_settlement(
            Money(Decimal('100.00'), 'EUR'), [], [],
            due_date=invoice.due_date, today=date(2026, 5, 1),
        )
        apply_settlement_status(invoice, settlement)

        invoice.refresh_from_db()
        assert invoice.status == InvoiceStatus.OVERDUE
        assert invoice.version == version + 1

    def test_stale_version_raises(self, make_invoice):
        """A concurrent writer makes the swap fail with InconsistentBalanceError."""
        invoice = make_invoice(issue=True)
        Invoice.objects.filter(pk=invoice.pk).update(version=invoice.version + 1)
        settlement = calculate_settlement(Money(Decimal('100.00'), 'EUR'), [], [])

        with pytest.raises(InconsistentBalanceError) as exc_info:
            apply_settlement_status(invoice, settlement)

        assert exc_info.value.expected_version == invoice.version
        assert exc_info.value.actual_version == invoice.version + 1


@pytest.mark.django_db
class TestCorrectionNotes:
    """Test suite for add_correction_note."""

    def test_appends_audit_entry(self, make_invoice, user):
        """A correction note is recorded without touching frozen fields."""
        invoice = make_invoice(issue=True)
        entry = add_correction_note(invoice, 'Customer VAT number corrected', actor=user)

        assert entry.action == AuditAction.CORRECTION_NOTE_ADDED
        assert entry.new_data == {'note': 'Customer VAT number corrected'}
        invoice.refresh_from_db()
        assert invoice.integrity_hash

    def test_draft_rejected(self, make_invoice):
        """Drafts are edited directly, not corrected."""
        with pytest.raises(InvalidStateError):
            add_correction_note(make_invoice(), 'Typo')

    def test_empty_note_rejected(self, make_invoice):
        """Blank notes are rejected."""
        with pytest.raises(ValidationError):
            add_correction_note(make_invoice(issue=True), '   ')
