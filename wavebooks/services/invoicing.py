# wavebooks/services/invoicing.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from wavebooks.extensions import db
from wavebooks.models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Project,
    ServiceLine,
    can_transition,
)
from wavebooks.services.db_helpers import commit_or_rollback, get_owned
from wavebooks.services.errors import ConsistencyError, StateError, ValidationError
from wavebooks.utils.clock import utcnow_naive


NUMBER_PREFIXES = {
    InvoiceType.INVOICE: "INV",
    InvoiceType.PROFORMA: "PRO",
}

CENT = Decimal("0.01")
# Matches the scale of the quantity columns
QUANTITY_PLACES = 3


# =========================================================
# Parsing helpers
# =========================================================
def to_decimal(value, field_name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}.", details={"field": field_name, "value": value})
    if not result.is_finite():
        raise ValidationError(f"Invalid {field_name}.", details={"field": field_name, "value": value})
    return result


def decimal_places(value: Decimal) -> int:
    """Significant digits after the point: 2.500 has 1, 0.0001 has 4."""
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


def line_total(unit_price: Decimal, quantity: Decimal) -> Decimal:
    return (Decimal(unit_price) * Decimal(quantity)).quantize(CENT)


# =========================================================
# Numbering
# =========================================================
def next_document_number(user_id: int, invoice_type: InvoiceType, year: Optional[int] = None) -> str:
    """
    Next per-account number: INV-2025-001, INV-2025-002, ... (quotes use PRO-).

    Two writers can compute the same number; the unique constraint on
    (user_id, invoice_number) catches it and callers retry.
    """
    year = year or utcnow_naive().year
    prefix = f"{NUMBER_PREFIXES[invoice_type]}-{year}-"

    numbers = db.session.execute(
        db.select(Invoice.invoice_number).where(
            Invoice.user_id == user_id,
            Invoice.invoice_number.like(f"{prefix}%"),
        )
    ).scalars()

    highest = 0
    for number in numbers:
        tail = number[len(prefix):]
        if tail.isdigit():
            highest = max(highest, int(tail))

    return f"{prefix}{highest + 1:03d}"


# =========================================================
# Quotes
# =========================================================
@dataclass(frozen=True)
class ServiceInput:
    name: str
    unit_price: Decimal
    quantity: Decimal
    unit: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceInput":
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Service name is required.", details={"field": "name"})
        unit_price = to_decimal(data.get("unit_price"), "unit_price")
        quantity = to_decimal(data.get("quantity"), "quantity")
        if unit_price < 0:
            raise ValidationError("Unit price cannot be negative.", details={"field": "unit_price"})
        if quantity <= 0:
            raise ValidationError("Quantity must be positive.", details={"field": "quantity"})
        if decimal_places(quantity) > QUANTITY_PLACES:
            raise ValidationError(
                f"Quantities allow at most {QUANTITY_PLACES} decimal places.", details={"field": "quantity"}
            )
        return cls(
            name=name,
            unit_price=unit_price,
            quantity=quantity,
            unit=(data.get("unit") or "").strip() or None,
            description=(data.get("description") or "").strip() or None,
        )


def create_quote(
    user_id: int,
    *,
    project_id: int,
    services: list[ServiceInput],
    due_date: Optional[date] = None,
    notes: Optional[str] = None,
    currency: Optional[str] = None,
) -> Invoice:
    """Create a DRAFT proforma with its ordered service lines."""
    if not services:
        raise ValidationError("A quote needs at least one service.", details={"field": "services"})

    max_attempts = current_app.config.get("CONVERSION_MAX_RETRIES", 3)
    for attempt in range(max_attempts):
        project = get_owned(Project, user_id, project_id)
        client = project.client

        quote = Invoice(
            user_id=user_id,
            invoice_number=next_document_number(user_id, InvoiceType.PROFORMA),
            type=InvoiceType.PROFORMA,
            status=InvoiceStatus.DRAFT,
            currency=currency or current_app.config.get("DEFAULT_CURRENCY", "XOF"),
            due_date=due_date,
            notes=notes,
            project_id=project.id,
            client_name=client.name if client else None,
            client_email=client.email if client else None,
            client_phone=client.phone if client else None,
            client_address=client.address if client else None,
        )
        quote.service_lines = [
            ServiceLine(
                position=index,
                name=svc.name,
                description=svc.description,
                unit_price=svc.unit_price,
                quantity=svc.quantity,
                unit=svc.unit,
            )
            for index, svc in enumerate(services)
        ]
        quote.amount = sum((line_total(s.unit_price, s.quantity) for s in services), Decimal("0"))

        db.session.add(quote)
        try:
            db.session.commit()
            current_app.logger.info("Quote %s created for project %s", quote.invoice_number, project.id)
            return quote
        except IntegrityError:
            db.session.rollback()
            current_app.logger.warning("Quote number clash (attempt %s)", attempt + 1)

    raise ConsistencyError("Could not allocate a quote number. Please try again.")


def issue_quote(user_id: int, quote_id: int) -> Invoice:
    """DRAFT -> PENDING: the quote has been sent to the client."""
    quote = get_owned(Invoice, user_id, quote_id, lock=True)
    if not quote.is_quote:
        raise ValidationError("Only quotes can be issued.", code="not-a-quote")
    if not can_transition(quote, InvoiceStatus.PENDING):
        raise StateError(
            f"Quote is {quote.status.value} and cannot be issued.",
            details={"status": quote.status.value},
        )
    quote.status = InvoiceStatus.PENDING
    commit_or_rollback("Issue quote")
    return quote


# =========================================================
# Billed invoices
# =========================================================
def _billed_invoice(user_id: int, invoice_id: int) -> Invoice:
    invoice = get_owned(Invoice, user_id, invoice_id, lock=True)
    if invoice.is_quote:
        raise ValidationError("This operation applies to invoices, not quotes.", code="not-an-invoice")
    return invoice


def cancel_invoice(user_id: int, invoice_id: int) -> Invoice:
    """
    Cancel a billed invoice. Its line items stop counting against the source
    quote, so the quantities become available again.
    """
    invoice = _billed_invoice(user_id, invoice_id)
    if not can_transition(invoice, InvoiceStatus.CANCELLED):
        raise StateError(
            f"Invoice is {invoice.status.value} and cannot be cancelled.",
            details={"status": invoice.status.value},
        )
    invoice.status = InvoiceStatus.CANCELLED
    commit_or_rollback("Cancel invoice")
    current_app.logger.info("Invoice %s cancelled", invoice.invoice_number)
    return invoice


def mark_invoice_paid(user_id: int, invoice_id: int, paid_date: Optional[datetime] = None) -> Invoice:
    invoice = _billed_invoice(user_id, invoice_id)
    if not can_transition(invoice, InvoiceStatus.PAID):
        raise StateError(
            f"Invoice is {invoice.status.value} and cannot be marked as paid.",
            details={"status": invoice.status.value},
        )
    invoice.status = InvoiceStatus.PAID
    invoice.paid_date = paid_date or utcnow_naive()
    commit_or_rollback("Mark invoice paid")
    current_app.logger.info("Invoice %s marked paid", invoice.invoice_number)
    return invoice


def refresh_overdue(user_id: int, today: Optional[date] = None) -> list[Invoice]:
    """PENDING invoices whose due date has passed become OVERDUE."""
    today = today or utcnow_naive().date()
    invoices = (
        Invoice.query.filter(
            Invoice.user_id == user_id,
            Invoice.type == InvoiceType.INVOICE,
            Invoice.status == InvoiceStatus.PENDING,
            Invoice.due_date.isnot(None),
            Invoice.due_date < today,
        )
        .order_by(Invoice.due_date.asc())
        .all()
    )
    for invoice in invoices:
        invoice.status = InvoiceStatus.OVERDUE

    if invoices:
        commit_or_rollback("Refresh overdue invoices")
        current_app.logger.info("%s invoice(s) moved to OVERDUE", len(invoices))
    return invoices
