"""Django app configuration for django-invoice-ledger."""

from django.apps import AppConfig


class DjangoInvoiceLedgerConfig(AppConfig):
    """App configuration for django-invoice-ledger."""

    name = 'django_invoice_ledger'
    verbose_name = 'Invoice Ledger'
    default_auto_field = 'django.db.models.BigAutoField'
