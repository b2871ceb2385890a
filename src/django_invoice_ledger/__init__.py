"""Django Invoice Ledger - Invoice settlement and VAT compliance ledger."""

__version__ = "0.1.0"

__all__ = [
    "Money",
    "get_settlement",
    "get_timeline",
    "get_audit_trail",
]


def __getattr__(name):
    """Lazy import to avoid AppRegistryNotReady errors."""
    if name == "Money":
        from django_invoice_ledger.money import Money
        return Money
    if name in ("get_settlement", "get_timeline", "get_audit_trail"):
        from django_invoice_ledger import ledger
        return getattr(ledger, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
