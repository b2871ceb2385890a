"""Shared fixtures for django-invoice-ledger tests."""

from datetime import date

import pytest
from django.contrib.auth import get_user_model

from django_invoice_ledger.calculator import Discount
from django_invoice_ledger.issuance import create_invoice, issue_invoice
from django_invoice_ledger.models import Customer
from tests.factories import line


User = get_user_model()


@pytest.fixture
def user(db):
    """The tenant owning the documents under test."""
    return User.objects.create_user(username='owner', email='owner@example.com', password='test')


@pytest.fixture
def other_user(db):
    """A second tenant."""
    return User.objects.create_user(username='other', email='other@example.com', password='test')


@pytest.fixture
def customer(user):
    """A customer of the tenant."""
    return Customer.objects.create(owner=user, name='Acme Ltd', email='billing@acme.test')


@pytest.fixture
def make_invoice(user, customer):
    """Factory creating draft invoices, issued on request."""

    def _make(
        items=None,
        issue=False,
        discount=None,
        issue_date=date(2026, 3, 1),
        due_date=date(2026, 3, 31),
        **kwargs,
    ):
        invoice = create_invoice(
            user,
            customer,
            items if items is not None else [line('100.00')],
            issue_date=issue_date,
            due_date=due_date,
            discount=discount or Discount(),
            actor=user,
            **kwargs,
        )
        if issue:
            invoice = issue_invoice(invoice, actor=user, today=issue_date)
        return invoice

    return _make
