# wavebooks/services/conversion.py
"""
Quote -> invoice conversion.

How much of a service line has been billed is never stored: it is the sum
of the line items that point at it, on invoices that are not CANCELLED.
Cancelling an invoice therefore gives its quantities back automatically.

A conversion checks the remaining quantities and writes the new invoice in
one transaction holding a row lock on the quote. The quote's version
counter is bumped on every conversion, so a writer that slipped past the
lock (or a database without row locks) fails with StaleDataError and the
whole check-and-write is retried.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from wavebooks.extensions import db
from wavebooks.models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceType,
    can_transition,
)
from wavebooks.services.db_helpers import commit_or_rollback, get_owned
from wavebooks.services.errors import (
    ConsistencyError,
    EmptySelectionError,
    GatewayError,
    InvalidSelectionError,
    ReconciliationError,
    ValidationError,
)
from wavebooks.services.invoicing import (
    QUANTITY_PLACES,
    decimal_places,
    line_total,
    next_document_number,
    to_decimal,
)
from wavebooks.utils.clock import utcnow_naive


ZERO = Decimal("0")


# =========================================================
# Types
# =========================================================
@dataclass(frozen=True)
class Selection:
    service_line_id: int
    quantity: Decimal

    @classmethod
    def from_dict(cls, data: dict) -> "Selection":
        try:
            service_line_id = int(data.get("service_line_id"))
        except (TypeError, ValueError):
            raise InvalidSelectionError("service_line_id must be an integer.", details={"selection": data})
        return cls(service_line_id, to_decimal(data.get("quantity"), "quantity"))


@dataclass(frozen=True)
class ClientOverride:
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class PaymentOptions:
    mark_as_paid: bool = False
    paid_date: Optional[datetime] = None
    due_date: Optional[date] = None
    generate_payment_link: bool = False
    notes: Optional[str] = None


@dataclass(frozen=True)
class ServiceRemaining:
    service_line_id: int
    name: str
    unit: Optional[str]
    unit_price: Decimal
    original_quantity: Decimal
    invoiced_quantity: Decimal
    remaining_quantity: Decimal
    invoiced_value: Decimal
    remaining_value: Decimal

    def to_dict(self) -> dict:
        return {
            "service_line_id": self.service_line_id,
            "name": self.name,
            "unit": self.unit,
            "unit_price": str(self.unit_price),
            "original_quantity": str(self.original_quantity),
            "invoiced_quantity": str(self.invoiced_quantity),
            "remaining_quantity": str(self.remaining_quantity),
            "invoiced_value": str(self.invoiced_value),
            "remaining_value": str(self.remaining_value),
        }


@dataclass(frozen=True)
class ConversionStatus:
    quote_id: int
    services: list[ServiceRemaining]
    total_amount: Decimal
    invoiced_amount: Decimal
    remaining_amount: Decimal
    conversion_percentage: Decimal
    conversion_count: int
    is_fully_converted: bool

    def for_service(self, service_line_id: int) -> Optional[ServiceRemaining]:
        for svc in self.services:
            if svc.service_line_id == service_line_id:
                return svc
        return None

    def to_dict(self) -> dict:
        return {
            "quote_id": self.quote_id,
            "services": [s.to_dict() for s in self.services],
            "total_amount": str(self.total_amount),
            "invoiced_amount": str(self.invoiced_amount),
            "remaining_amount": str(self.remaining_amount),
            "conversion_percentage": str(self.conversion_percentage),
            "conversion_count": self.conversion_count,
            "is_fully_converted": self.is_fully_converted,
        }


@dataclass
class ConversionResult:
    invoice: Invoice
    status: ConversionStatus
    warnings: list[dict] = field(default_factory=list)


# =========================================================
# Conversion ledger
# =========================================================
def _as_decimal(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def _ledger(quote: Invoice) -> ConversionStatus:
    invoiced_rows = db.session.execute(
        db.select(
            InvoiceLineItem.source_service_line_id,
            func.coalesce(func.sum(InvoiceLineItem.quantity), 0),
        )
        .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
        .where(
            Invoice.source_quote_id == quote.id,
            Invoice.status != InvoiceStatus.CANCELLED,
            InvoiceLineItem.source_service_line_id.isnot(None),
        )
        .group_by(InvoiceLineItem.source_service_line_id)
    ).all()
    invoiced_by_line = {line_id: _as_decimal(qty) for line_id, qty in invoiced_rows}

    conversion_count = db.session.execute(
        db.select(func.count(Invoice.id)).where(
            Invoice.source_quote_id == quote.id,
            Invoice.status != InvoiceStatus.CANCELLED,
        )
    ).scalar_one()

    services = []
    for line in quote.service_lines:
        original = _as_decimal(line.quantity)
        price = _as_decimal(line.unit_price)
        invoiced = invoiced_by_line.get(line.id, ZERO)
        remaining = max(ZERO, original - invoiced)
        services.append(
            ServiceRemaining(
                service_line_id=line.id,
                name=line.name,
                unit=line.unit,
                unit_price=price,
                original_quantity=original,
                invoiced_quantity=invoiced,
                remaining_quantity=remaining,
                invoiced_value=line_total(price, invoiced),
                remaining_value=line_total(price, remaining),
            )
        )

    total = sum((line_total(s.unit_price, s.original_quantity) for s in services), ZERO)
    invoiced_amount = sum((s.invoiced_value for s in services), ZERO)
    remaining_amount = sum((s.remaining_value for s in services), ZERO)
    if total > 0:
        percentage = (invoiced_amount / total * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    else:
        percentage = Decimal("0.00")

    return ConversionStatus(
        quote_id=quote.id,
        services=services,
        total_amount=total,
        invoiced_amount=invoiced_amount,
        remaining_amount=remaining_amount,
        conversion_percentage=percentage,
        conversion_count=int(conversion_count or 0),
        # A quote with no services has nothing to convert, so it is never "fully converted"
        is_fully_converted=bool(services) and all(s.remaining_quantity == 0 for s in services),
    )


def _get_quote(user_id: int, quote_id: int, *, lock: bool = False) -> Invoice:
    quote = get_owned(Invoice, user_id, quote_id, lock=lock)
    if not quote.is_quote:
        raise ValidationError("Only quotes can be converted.", code="not-a-quote")
    return quote


def remaining(user_id: int, quote_id: int) -> ConversionStatus:
    """Per-service remaining quantities and quote-level conversion totals."""
    return _ledger(_get_quote(user_id, quote_id))


# =========================================================
# Conversion engine
# =========================================================
def _validate_selections(selections: list[Selection], status: ConversionStatus) -> None:
    if not any(sel.quantity > 0 for sel in selections):
        raise EmptySelectionError("Select at least one service with a positive quantity.")

    seen = set()
    for sel in selections:
        details = {"service_line_id": sel.service_line_id, "quantity": str(sel.quantity)}
        if sel.quantity <= 0:
            raise InvalidSelectionError("Quantities must be positive.", details=details)
        if decimal_places(sel.quantity) > QUANTITY_PLACES:
            raise InvalidSelectionError(
                f"Quantities allow at most {QUANTITY_PLACES} decimal places.", details=details
            )
        if sel.service_line_id in seen:
            raise InvalidSelectionError("A service can only be selected once.", details=details)
        seen.add(sel.service_line_id)

        svc = status.for_service(sel.service_line_id)
        if svc is None:
            raise InvalidSelectionError("Service does not belong to this quote.", details=details)
        if sel.quantity > svc.remaining_quantity:
            details["remaining_quantity"] = str(svc.remaining_quantity)
            raise InvalidSelectionError(
                f"Only {svc.remaining_quantity} left to invoice for '{svc.name}'.",
                details=details,
            )


def _client_snapshot(quote: Invoice, override: ClientOverride) -> dict:
    """Override fields win, then the project's client, then the quote's own snapshot."""
    client = quote.project.client if quote.project else None

    def pick(attr: str, quote_attr: str):
        value = getattr(override, attr)
        if value:
            return value
        if client is not None and getattr(client, attr, None):
            return getattr(client, attr)
        return getattr(quote, quote_attr)

    return {
        "client_name": pick("name", "client_name"),
        "client_email": pick("email", "client_email"),
        "client_phone": pick("phone", "client_phone"),
        "client_address": pick("address", "client_address"),
    }


def _convert_once(
    user_id: int,
    quote_id: int,
    selections: list[Selection],
    override: ClientOverride,
    options: PaymentOptions,
) -> tuple[Invoice, ConversionStatus]:
    quote = _get_quote(user_id, quote_id, lock=True)
    lines = {line.id: line for line in quote.service_lines}

    _validate_selections(selections, _ledger(quote))

    now = utcnow_naive()
    invoice = Invoice(
        user_id=user_id,
        invoice_number=next_document_number(user_id, InvoiceType.INVOICE),
        type=InvoiceType.INVOICE,
        status=InvoiceStatus.PAID if options.mark_as_paid else InvoiceStatus.PENDING,
        currency=quote.currency,
        due_date=options.due_date or quote.due_date,
        paid_date=(options.paid_date or now) if options.mark_as_paid else None,
        notes=options.notes,
        project_id=quote.project_id,
        source_quote_id=quote.id,
        **_client_snapshot(quote, override),
    )

    amount = ZERO
    for sel in selections:
        line = lines[sel.service_line_id]
        total = line_total(line.unit_price, sel.quantity)
        amount += total
        invoice.items.append(
            InvoiceLineItem(
                source_service_line_id=line.id,
                name=line.name,
                description=line.description,
                unit=line.unit,
                quantity=sel.quantity,
                unit_price=line.unit_price,
                total=total,
            )
        )
    invoice.amount = amount

    db.session.add(invoice)
    db.session.flush()

    status = _ledger(quote)
    if status.is_fully_converted and can_transition(quote, InvoiceStatus.CONVERTED):
        quote.status = InvoiceStatus.CONVERTED
    elif quote.status == InvoiceStatus.DRAFT:
        quote.status = InvoiceStatus.PENDING

    # Always touch the quote so its version counter moves on every conversion
    quote.updated_at = now
    flag_modified(quote, "updated_at")

    db.session.commit()
    return invoice, status


def _attach_payment_link(invoice: Invoice, gateway, warnings: list[dict]) -> None:
    if gateway is None:
        warnings.append({
            "code": "payment-link-skipped",
            "message": "No Wave gateway is configured; the invoice has no payment link.",
        })
        return

    base = (current_app.config.get("PUBLIC_BASE_URL") or "").rstrip("/")
    try:
        session = gateway.create_checkout_session(
            amount=invoice.amount,
            currency=invoice.currency,
            success_url=f"{base}/invoices/{invoice.id}/payment/success",
            error_url=f"{base}/invoices/{invoice.id}/payment/error",
            client_reference=invoice.invoice_number,
        )
    except GatewayError as exc:
        current_app.logger.warning("Payment link for %s failed: %s", invoice.invoice_number, exc.code)
        warnings.append({"code": "payment-link-failed", "message": exc.message, "gateway_code": exc.code})
        return

    invoice.payment_link = session.launch_url
    invoice.checkout_session_id = session.id
    commit_or_rollback("Store payment link")


def convert(
    user_id: int,
    quote_id: int,
    selections: list[Selection],
    client_override: Optional[ClientOverride] = None,
    options: Optional[PaymentOptions] = None,
    gateway=None,
) -> ConversionResult:
    """
    Bill part (or all) of a quote as a new INVOICE.

    Raises EmptySelectionError / InvalidSelectionError without writing
    anything, and ConsistencyError when concurrent conversions keep winning
    the race.
    """
    override = client_override or ClientOverride()
    options = options or PaymentOptions()
    max_attempts = max(1, current_app.config.get("CONVERSION_MAX_RETRIES", 3))

    for attempt in range(1, max_attempts + 1):
        try:
            invoice, status = _convert_once(user_id, quote_id, selections, override, options)
            break
        except ReconciliationError:
            db.session.rollback()
            raise
        except (StaleDataError, IntegrityError):
            db.session.rollback()
            current_app.logger.warning(
                "Conversion of quote %s lost a race (attempt %s/%s)", quote_id, attempt, max_attempts
            )
    else:
        raise ConsistencyError(
            "The quote was modified concurrently. Please reload and try again.",
            details={"quote_id": quote_id, "attempts": max_attempts},
        )

    current_app.logger.info(
        "Quote %s converted into %s (%s %s)", quote_id, invoice.invoice_number, invoice.amount, invoice.currency
    )

    warnings: list[dict] = []
    if options.generate_payment_link:
        _attach_payment_link(invoice, gateway, warnings)

    return ConversionResult(invoice=invoice, status=status, warnings=warnings)
