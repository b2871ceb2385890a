"""Document models for the invoice ledger.

Invoices, credit notes, payments and quotations with their line items,
plus the append-only audit trail and per-owner document sequences.

Write rules enforced at model level:
- An issued invoice's frozen fields cannot change (ImmutableDocumentError)
- Line items and stored totals of an issued invoice cannot change
- Credit notes, payments and audit entries are immutable once saved
- Invoices are never deleted
"""

import uuid
from datetime import date
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_invoice_ledger.calculator import Discount, DiscountType, line_total
from django_invoice_ledger.exceptions import ImmutableDocumentError
from django_invoice_ledger.money import Money


class TimeStampedUUIDModel(models.Model):
    """Abstract base model with UUID primary key and timestamps."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class OwnedQuerySet(models.QuerySet):
    """Queryset with tenant scoping."""

    def for_owner(self, owner):
        """Return records belonging to the given owner."""
        return self.filter(owner=owner)


# =============================================================================
# Customers
# =============================================================================


class Customer(TimeStampedUUIDModel):
    """A billed party."""

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_customers',
    )
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default='')
    vat_number = models.CharField(max_length=50, blank=True, default='')
    address = models.TextField(blank=True, default='')

    objects = OwnedQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['name']

    def __str__(self):
        return self.name


# =============================================================================
# Invoices
# =============================================================================


class InvoiceStatus(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    ISSUED = 'issued', 'Issued'
    PARTIALLY_PAID = 'partially_paid', 'Partially Paid'
    PAID = 'paid', 'Paid'
    OVERDUE = 'overdue', 'Overdue'


UNSETTLED_STATUSES = (
    InvoiceStatus.ISSUED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
)


class InvoiceQuerySet(OwnedQuerySet):
    """Custom queryset for Invoice model."""

    def drafts(self):
        return self.filter(is_issued=False)

    def issued(self):
        return self.filter(is_issued=True)

    def unsettled(self):
        """Issued invoices that are not yet paid."""
        return self.issued().filter(status__in=UNSETTLED_STATUSES)


class Invoice(TimeStampedUUIDModel):
    """
    Sales invoice.

    Mutable while draft. Issuing freezes the fields in FROZEN_FIELDS, its
    line items and its stored totals; afterwards only payments, credit
    notes, correction notes and status recalculation touch it.

    `status` is a cached projection of the settlement and is written with
    a compare-and-swap on `version` (see issuance.apply_settlement_status).
    """

    FROZEN_FIELDS = (
        'customer_id',
        'invoice_number',
        'issue_date',
        'due_date',
        'currency',
        'discount_type',
        'discount_value',
        'is_issued',
        'issued_at',
        'integrity_hash',
    )

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_invoices',
        help_text="Tenant owning this invoice",
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.PROTECT,
        related_name='invoices',
    )
    invoice_number = models.CharField(
        max_length=50,
        blank=True,
        default='',
        help_text="Assigned at issuance if empty",
    )
    issue_date = models.DateField(default=date.today)
    due_date = models.DateField(null=True, blank=True)
    currency = models.CharField(max_length=3, default='EUR')

    discount_type = models.CharField(
        max_length=10,
        choices=DiscountType.choices,
        default=DiscountType.NONE,
    )
    discount_value = models.DecimalField(
        max_digits=19,
        decimal_places=4,
        default=Decimal('0'),
        help_text="Percent (0-100) or fixed amount depending on discount_type",
    )

    is_issued = models.BooleanField(default=False, db_index=True)
    issued_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.DRAFT,
        db_index=True,
    )
    version = models.PositiveIntegerField(
        default=0,
        help_text="Incremented on every status write (optimistic concurrency token)",
    )
    integrity_hash = models.CharField(
        max_length=64,
        blank=True,
        default='',
        help_text="SHA-256 of the frozen content, set at issuance",
    )

    notes = models.TextField(blank=True, default='')
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )

    objects = InvoiceQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['-issue_date', '-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['owner', 'invoice_number'],
                condition=~Q(invoice_number=''),
                name='invoice_number_unique_per_owner',
            ),
            models.CheckConstraint(
                condition=Q(discount_value__gte=0),
                name='invoice_discount_value_non_negative',
            ),
        ]

    def __str__(self):
        return f"Invoice {self.invoice_number or 'draft'} ({self.status})"

    @property
    def discount(self) -> Discount:
        """Return the discount policy."""
        return Discount(self.discount_type, self.discount_value)

    def save(self, *args, **kwargs):
        """Reject changes to frozen fields once the stored row is issued."""
        if not self._state.adding:
            persisted = (
                Invoice.objects.filter(pk=self.pk)
                .values(*self.FROZEN_FIELDS)
                .first()
            )
            if persisted and persisted['is_issued']:
                changed = [
                    field for field in self.FROZEN_FIELDS
                    if getattr(self, field) != persisted[field]
                ]
                if changed:
                    raise ImmutableDocumentError(
                        f"Cannot modify {', '.join(changed)} on issued invoice "
                        f"{persisted['invoice_number']}. Create a credit note instead."
                    )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError("Invoices are permanent records and cannot be deleted")


class LineItemFields(models.Model):
    """Abstract line item shared by invoices, credit notes and quotations."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    position = models.PositiveIntegerField(default=0)
    description = models.CharField(max_length=255)
    quantity = models.DecimalField(max_digits=12, decimal_places=3)
    unit_price_amount = models.DecimalField(max_digits=19, decimal_places=4)
    vat_rate = models.DecimalField(
        max_digits=5,
        decimal_places=4,
        default=Decimal('0'),
        help_text="VAT rate as a fraction (0.18 = 18%)",
    )
    unit = models.CharField(max_length=20, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True
        ordering = ['position', 'created_at']

    def __str__(self):
        return f"{self.description} x{self.quantity}"

    @property
    def line_total_amount(self) -> Decimal:
        return line_total(self)


class InvoiceLineItem(LineItemFields):
    """Line item on an invoice. Frozen once the invoice is issued."""

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name='line_items',
    )

    class Meta(LineItemFields.Meta):
        app_label = 'django_invoice_ledger'
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity__gte=0),
                name='invoicelineitem_quantity_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(unit_price_amount__gte=0),
                name='invoicelineitem_unit_price_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(vat_rate__gte=0) & Q(vat_rate__lte=1),
                name='invoicelineitem_vat_rate_fraction',
            ),
        ]

    def _check_invoice_mutable(self):
        if Invoice.objects.filter(pk=self.invoice_id, is_issued=True).exists():
            raise ImmutableDocumentError(
                "Cannot change line items of an issued invoice. Create a credit note instead."
            )

    def save(self, *args, **kwargs):
        self._check_invoice_mutable()
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        self._check_invoice_mutable()
        return super().delete(*args, **kwargs)

    @property
    def line_total(self) -> Money:
        return Money(self.line_total_amount, self.invoice.currency)


class InvoiceTotals(models.Model):
    """Totals frozen at issuance.

    Absent for drafts; readers recompute from line items in that case.
    """

    invoice = models.OneToOneField(
        Invoice,
        on_delete=models.PROTECT,
        related_name='stored_totals',
    )
    subtotal_amount = models.DecimalField(max_digits=19, decimal_places=4)
    discount_amount = models.DecimalField(max_digits=19, decimal_places=4)
    taxable_amount = models.DecimalField(max_digits=19, decimal_places=4)
    vat_amount = models.DecimalField(max_digits=19, decimal_places=4)
    total_amount = models.DecimalField(max_digits=19, decimal_places=4)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = 'django_invoice_ledger'
        verbose_name_plural = 'invoice totals'

    def __str__(self):
        return f"Totals for {self.invoice_id}: {self.total_amount}"

    def save(self, *args, **kwargs):
        if self.pk and InvoiceTotals.objects.filter(pk=self.pk).exists():
            raise ImmutableDocumentError("Stored invoice totals cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError("Stored invoice totals cannot be deleted")


# =============================================================================
# Credit notes
# =============================================================================


class CreditNoteQuerySet(OwnedQuerySet):
    """Custom queryset for CreditNote model."""

    def for_invoice(self, invoice):
        return self.filter(invoice=invoice)

    def unapplied(self):
        """Credit notes not referencing any invoice."""
        return self.filter(invoice__isnull=True)


class CreditNote(TimeStampedUUIDModel):
    """
    Corrective document against an issued invoice.

    Immutable once created. Gross amount is amount x (1 + vat_rate).
    A credit note without an invoice is unapplied credit.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_credit_notes',
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.PROTECT,
        related_name='credit_notes',
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='credit_notes',
        help_text="Originating invoice (null = unapplied credit)",
    )
    credit_note_number = models.CharField(max_length=50)
    amount = models.DecimalField(
        max_digits=19,
        decimal_places=4,
        help_text="Net amount credited",
    )
    vat_rate = models.DecimalField(max_digits=5, decimal_places=4, default=Decimal('0'))
    currency = models.CharField(max_length=3, default='EUR')
    reason = models.TextField()
    issue_date = models.DateField(default=date.today)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )

    objects = CreditNoteQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['issue_date', 'created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['owner', 'credit_note_number'],
                name='credit_note_number_unique_per_owner',
            ),
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='creditnote_amount_positive',
            ),
            models.CheckConstraint(
                condition=~Q(reason=''),
                name='creditnote_reason_not_empty',
            ),
        ]

    def __str__(self):
        return f"Credit Note {self.credit_note_number} - {self.gross}"

    @property
    def net(self) -> Money:
        return Money(self.amount, self.currency)

    @property
    def gross(self) -> Money:
        return (self.net * (Decimal('1') + Decimal(str(self.vat_rate)))).quantized()

    @property
    def gross_amount(self) -> Decimal:
        return self.gross.amount

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableDocumentError(
                f"Credit note {self.credit_note_number} is immutable once created"
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError("Credit notes cannot be deleted")


class CreditNoteItem(LineItemFields):
    """Line item on a credit note. Immutable once created."""

    credit_note = models.ForeignKey(
        CreditNote,
        on_delete=models.PROTECT,
        related_name='items',
    )

    class Meta(LineItemFields.Meta):
        app_label = 'django_invoice_ledger'

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableDocumentError("Credit note items are immutable once created")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError("Credit note items cannot be deleted")


# =============================================================================
# Payments
# =============================================================================


class PaymentMethod(models.TextChoices):
    BANK_TRANSFER = 'bank_transfer', 'Bank Transfer'
    CASH = 'cash', 'Cash'
    CARD = 'card', 'Card'
    CHECK = 'check', 'Check'
    OTHER = 'other', 'Other'


class Payment(models.Model):
    """
    Payment received against an invoice.

    Additive only: corrections are made with an offsetting payment or a
    credit note, never by editing or deleting a payment.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_payments',
    )
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='payments',
    )
    amount = models.DecimalField(max_digits=19, decimal_places=4)
    payment_date = models.DateField(default=date.today)
    method = models.CharField(
        max_length=20,
        choices=PaymentMethod.choices,
        default=PaymentMethod.BANK_TRANSFER,
    )
    reference = models.CharField(max_length=255, blank=True, default='')
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    objects = OwnedQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['payment_date', 'created_at']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name='payment_amount_positive',
            ),
        ]

    def __str__(self):
        return f"Payment {self.amount} ({self.method}) on {self.payment_date}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableDocumentError("Payments are immutable once recorded")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError(
            "Payments cannot be deleted. Record an offsetting payment or a credit note."
        )


# =============================================================================
# Quotations
# =============================================================================


class QuotationStatus(models.TextChoices):
    DRAFT = 'draft', 'Draft'
    SENT = 'sent', 'Sent'
    ACCEPTED = 'accepted', 'Accepted'
    CONVERTED = 'converted', 'Converted'
    EXPIRED = 'expired', 'Expired'


class Quotation(TimeStampedUUIDModel):
    """Price quotation. Freely editable; may convert into a draft invoice."""

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_quotations',
    )
    customer = models.ForeignKey(
        Customer,
        on_delete=models.PROTECT,
        related_name='quotations',
    )
    quotation_number = models.CharField(max_length=50, blank=True, default='')
    issue_date = models.DateField(default=date.today)
    valid_until = models.DateField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=QuotationStatus.choices,
        default=QuotationStatus.DRAFT,
        db_index=True,
    )
    currency = models.CharField(max_length=3, default='EUR')
    discount_type = models.CharField(
        max_length=10,
        choices=DiscountType.choices,
        default=DiscountType.NONE,
    )
    discount_value = models.DecimalField(max_digits=19, decimal_places=4, default=Decimal('0'))
    converted_invoice = models.OneToOneField(
        Invoice,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='source_quotation',
    )
    converted_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default='')

    objects = OwnedQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['-issue_date', '-created_at']

    def __str__(self):
        return f"Quotation {self.quotation_number or 'draft'} ({self.status})"

    @property
    def discount(self) -> Discount:
        return Discount(self.discount_type, self.discount_value)


class QuotationItem(LineItemFields):
    """Line item on a quotation."""

    quotation = models.ForeignKey(
        Quotation,
        on_delete=models.CASCADE,
        related_name='items',
    )

    class Meta(LineItemFields.Meta):
        app_label = 'django_invoice_ledger'


# =============================================================================
# Audit trail
# =============================================================================


class AuditAction(models.TextChoices):
    CREATED = 'created', 'Created'
    ISSUED = 'issued', 'Issued'
    CREDIT_NOTE_CREATED = 'credit_note_created', 'Credit note created'
    CORRECTION_NOTE_ADDED = 'correction_note_added', 'Correction note added'


class AuditEntryQuerySet(models.QuerySet):
    """Queryset that refuses bulk edits and deletes."""

    def update(self, **kwargs):
        raise ImmutableDocumentError("Audit entries are append-only and cannot be updated")

    def delete(self):
        raise ImmutableDocumentError("Audit entries are append-only and cannot be deleted")


class AuditEntry(models.Model):
    """
    Append-only lifecycle record attached to an invoice.

    Ordered by timestamp, then by insertion (auto-increment id) so entries
    sharing a timestamp keep their insertion order.
    """

    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='audit_entries',
    )
    action = models.CharField(max_length=50, choices=AuditAction.choices, db_index=True)
    timestamp = models.DateTimeField(default=timezone.now, db_index=True)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    actor_display = models.CharField(
        max_length=200,
        blank=True,
        default='',
        help_text="Snapshot of actor identity at the time of the action",
    )
    prior_data = models.JSONField(null=True, blank=True)
    new_data = models.JSONField(null=True, blank=True)

    objects = AuditEntryQuerySet.as_manager()

    class Meta:
        app_label = 'django_invoice_ledger'
        ordering = ['timestamp', 'id']
        verbose_name_plural = 'audit entries'
        indexes = [
            models.Index(fields=['invoice', 'timestamp']),
        ]

    def __str__(self):
        actor = self.actor_display or 'System'
        return f"{actor} {self.action} {self.invoice_id}"

    def save(self, *args, **kwargs):
        if self.pk and AuditEntry.objects.filter(pk=self.pk).exists():
            raise ImmutableDocumentError("Audit entries are append-only and cannot be updated")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableDocumentError("Audit entries are append-only and cannot be deleted")


# =============================================================================
# Document numbering
# =============================================================================


class DocumentSequence(TimeStampedUUIDModel):
    """
    Per-owner, per-scope, per-year counter for document numbers.

    Generates numbers like "INV-2026-0042". Always allocate through
    numbering.next_document_number(), which locks the row.
    """

    scope = models.CharField(
        max_length=50,
        help_text="Sequence scope: 'invoice', 'credit_note', 'quotation'",
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='ledger_sequences',
    )
    year = models.PositiveSmallIntegerField()
    prefix = models.CharField(max_length=20)
    current_value = models.PositiveBigIntegerField(default=0)
    pad_width = models.PositiveSmallIntegerField(default=4)

    class Meta:
        app_label = 'django_invoice_ledger'
        constraints = [
            models.UniqueConstraint(
                fields=['scope', 'owner', 'year'],
                name='document_sequence_unique_scope_owner_year',
            ),
        ]

    def __str__(self):
        return f"{self.scope} ({self.owner_id}, {self.year}): {self.current_value}"

    @property
    def formatted_value(self) -> str:
        """Return the current value as e.g. "INV-2026-0042"."""
        number_str = str(self.current_value).zfill(self.pad_width)
        return f"{self.prefix}{self.year}-{number_str}"
