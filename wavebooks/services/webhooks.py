# wavebooks/services/webhooks.py
from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from wavebooks.extensions import db
from wavebooks.models import Invoice, InvoiceStatus, InvoiceType, can_transition
from wavebooks.services.errors import ConsistencyError, ValidationError
from wavebooks.utils.clock import parse_timestamp, utcnow_naive


SUCCESS_EVENTS = {"payment.completed", "payment.success", "checkout.session.completed"}
FAILURE_EVENTS = {"payment.failed", "payment.cancelled", "checkout.session.payment_failed"}


@dataclass(frozen=True)
class WebhookOutcome:
    event: str
    handled: bool
    invoice_id: Optional[int] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "handled": self.handled,
            "invoice_id": self.invoice_id,
            "detail": self.detail,
        }


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded; an optional "sha256=" prefix is accepted."""
    if not signature or not secret:
        return False
    received = signature.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def _find_invoice(session_id: Optional[str], reference: Optional[str]) -> Optional[Invoice]:
    base = Invoice.query.filter(Invoice.type == InvoiceType.INVOICE)
    if session_id:
        invoice = base.filter(Invoice.checkout_session_id == session_id).first()
        if invoice is not None:
            return invoice
    if reference:
        # Numbers are only unique per account: refuse to guess between accounts
        matches = base.filter(Invoice.invoice_number == reference).limit(2).all()
        if len(matches) == 1:
            return matches[0]
    return None


def _mark_paid(invoice: Invoice, data: dict) -> str:
    if invoice.status == InvoiceStatus.PAID:
        return "already-paid"
    if not can_transition(invoice, InvoiceStatus.PAID):
        current_app.logger.warning(
            "Webhook payment for invoice %s ignored: status is %s", invoice.invoice_number, invoice.status.value
        )
        return f"ignored-{invoice.status.value.lower()}"

    invoice.status = InvoiceStatus.PAID
    invoice.paid_date = (
        parse_timestamp(data.get("when_completed") or data.get("updated_at")) or utcnow_naive()
    )
    if data.get("id") and not invoice.checkout_session_id:
        invoice.checkout_session_id = str(data["id"])
    note = "Paid via Wave checkout"
    if data.get("transaction_id"):
        note = f"Paid via Wave - Transaction {data['transaction_id']}"
    invoice.notes = f"{invoice.notes}\n{note}" if invoice.notes else note
    return "marked-paid"


def handle_event(payload: dict) -> WebhookOutcome:
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object.")

    event = str(payload.get("event") or payload.get("type") or "").strip()
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook data must be a JSON object.")

    session_id = data.get("id")
    reference = data.get("client_reference") or data.get("reference")

    if event in SUCCESS_EVENTS:
        invoice = _find_invoice(session_id, reference)
        if invoice is None:
            current_app.logger.warning("Wave webhook %s: no invoice for session=%s ref=%s", event, session_id, reference)
            return WebhookOutcome(event, handled=False, detail="invoice-not-found")

        detail = _mark_paid(invoice, data)
        try:
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            raise ConsistencyError("Invoice changed while the webhook was processed.")
        current_app.logger.info("Wave webhook %s: invoice %s %s", event, invoice.invoice_number, detail)
        return WebhookOutcome(event, handled=True, invoice_id=invoice.id, detail=detail)

    if event in FAILURE_EVENTS:
        current_app.logger.warning(
            "Wave webhook %s for session=%s ref=%s status=%s",
            event, session_id, reference, data.get("status") or data.get("payment_status"),
        )
        return WebhookOutcome(event, handled=True, detail="logged")

    current_app.logger.info("Wave webhook %r not handled", event)
    return WebhookOutcome(event or "unknown", handled=False, detail="ignored")
