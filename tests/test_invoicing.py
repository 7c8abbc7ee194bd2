# tests/test_invoicing.py
from datetime import date, timedelta
from decimal import Decimal

import pytest

from wavebooks.extensions import db
from wavebooks.models import Invoice, InvoiceStatus, InvoiceType
from wavebooks.services.errors import NotFoundError, StateError, ValidationError
from wavebooks.services.invoicing import (
    ServiceInput,
    cancel_invoice,
    create_quote,
    issue_quote,
    mark_invoice_paid,
    next_document_number,
    refresh_overdue,
)
from wavebooks.utils.clock import utcnow_naive


def _invoice(user_id, number, **kwargs):
    inv = Invoice(
        user_id=user_id,
        invoice_number=number,
        type=kwargs.pop("type", InvoiceType.INVOICE),
        status=kwargs.pop("status", InvoiceStatus.PENDING),
        amount=kwargs.pop("amount", Decimal("1000")),
        **kwargs,
    )
    db.session.add(inv)
    db.session.commit()
    return inv


def test_quote_numbers_are_sequential(user, make_quote):
    year = utcnow_naive().year
    first = make_quote()
    second = make_quote()

    assert first.invoice_number == f"PRO-{year}-001"
    assert second.invoice_number == f"PRO-{year}-002"
    assert first.status == InvoiceStatus.DRAFT
    assert first.amount == Decimal("20000")
    assert first.client_name == "Acme SARL"
    assert [line.position for line in first.service_lines] == [0, 1]


def test_numbering_continues_from_highest_and_ignores_other_accounts(user, other_user):
    _invoice(user.id, "INV-2026-009")
    _invoice(user.id, "INV-2026-003")
    _invoice(other_user.id, "INV-2026-042")
    _invoice(user.id, "INV-2025-077")

    assert next_document_number(user.id, InvoiceType.INVOICE, 2026) == "INV-2026-010"
    assert next_document_number(other_user.id, InvoiceType.INVOICE, 2026) == "INV-2026-043"
    assert next_document_number(user.id, InvoiceType.PROFORMA, 2026) == "PRO-2026-001"


@pytest.mark.parametrize(
    "data",
    [
        {"name": "", "unit_price": "10", "quantity": "1"},
        {"name": "A", "unit_price": "-1", "quantity": "1"},
        {"name": "A", "unit_price": "10", "quantity": "0"},
        {"name": "A", "unit_price": "abc", "quantity": "1"},
        {"name": "A", "unit_price": "10", "quantity": "0.0001"},
    ],
)
def test_service_input_validation(data):
    with pytest.raises(ValidationError):
        ServiceInput.from_dict(data)


def test_quote_on_foreign_project_is_not_found(other_user, project):
    with pytest.raises(NotFoundError):
        create_quote(
            other_user.id,
            project_id=project.id,
            services=[ServiceInput.from_dict({"name": "A", "unit_price": "1", "quantity": "1"})],
        )


def test_issue_quote_once(user, make_quote):
    quote = make_quote()

    issue_quote(user.id, quote.id)
    assert quote.status == InvoiceStatus.PENDING

    with pytest.raises(StateError):
        issue_quote(user.id, quote.id)


def test_paid_invoice_cannot_be_cancelled(user, invoice):
    mark_invoice_paid(user.id, invoice.id)
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.paid_date is not None

    with pytest.raises(StateError):
        cancel_invoice(user.id, invoice.id)


def test_refresh_overdue(user):
    today = date(2026, 10, 19)
    late = _invoice(user.id, "INV-2026-100", due_date=today - timedelta(days=1))
    on_time = _invoice(user.id, "INV-2026-101", due_date=today)
    paid = _invoice(user.id, "INV-2026-102", status=InvoiceStatus.PAID, due_date=today - timedelta(days=5))

    updated = refresh_overdue(user.id, today)

    assert [inv.id for inv in updated] == [late.id]
    assert late.status == InvoiceStatus.OVERDUE
    assert on_time.status == InvoiceStatus.PENDING
    assert paid.status == InvoiceStatus.PAID
