# wavebooks/api.py
from __future__ import annotations

from datetime import date

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from wavebooks.extensions import limiter
from wavebooks.models import (
    CompensatingMovement,
    Invoice,
    PayoutAttempt,
    TransactionAssignment,
)
from wavebooks.services import assignments, conversion, invoicing, payments, webhooks
from wavebooks.services.errors import (
    GatewayNotConfiguredError,
    ReconciliationError,
    ValidationError,
)
from wavebooks.services.states import Conflict
from wavebooks.services.wave_client import ExternalTransaction, gateway_for
from wavebooks.utils.clock import parse_timestamp, utcnow_naive

api = Blueprint("api", __name__, url_prefix="/api")

MONEY_LIMIT = "10 per minute"


# =========================================================
# Errors
# =========================================================
@api.errorhandler(ReconciliationError)
def _reconciliation_error(exc: ReconciliationError):
    return jsonify(exc.to_dict()), exc.http_status


# =========================================================
# Parsing helpers
# =========================================================
def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _parse_int(val):
    try:
        if val is None or str(val).strip() == "":
            return None
        return int(val)
    except (TypeError, ValueError):
        return None


def _parse_date(val, field_name: str):
    if not val:
        return None
    try:
        return date.fromisoformat(str(val))
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an ISO date (YYYY-MM-DD).", details={"field": field_name})


def _parse_datetime(val, field_name: str):
    if not val:
        return None
    parsed = parse_timestamp(val)
    if parsed is None:
        raise ValidationError(f"{field_name} must be an ISO timestamp.", details={"field": field_name})
    return parsed


def _parse_bool(val) -> bool:
    if isinstance(val, bool):
        return val
    return str(val or "").strip().lower() in ("1", "true", "yes", "on")


def _gateway():
    return gateway_for(current_user)


def _gateway_or_none():
    try:
        return _gateway()
    except GatewayNotConfiguredError:
        return None


def _transaction(transaction_id: str, body: dict) -> ExternalTransaction:
    """
    The transaction to act on: the payload sent by the caller, or else the
    snapshot stored when it was assigned.
    """
    payload = body.get("transaction")
    if payload:
        tx = ExternalTransaction.from_payload(payload)
        if tx.id != transaction_id:
            raise ValidationError(
                "Transaction id in the body does not match the URL.",
                details={"url": transaction_id, "body": tx.id},
            )
        return tx

    row = assignments.require_assignment(current_user.id, transaction_id)
    return assignments.transaction_from_assignment(row)


def _stored_transaction(transaction_id: str) -> ExternalTransaction:
    """
    The snapshot stored when the transaction was assigned. Money commands
    only act on it and never on a transaction sent by the caller.
    """
    row = assignments.require_assignment(current_user.id, transaction_id)
    return assignments.transaction_from_assignment(row)


# =========================================================
# Serializers
# =========================================================
def _money(value) -> str | None:
    return None if value is None else str(value)


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _invoice_json(inv: Invoice) -> dict:
    return {
        "id": inv.id,
        "invoice_number": inv.invoice_number,
        "type": inv.type.value,
        "status": inv.status.value,
        "amount": _money(inv.amount),
        "currency": inv.currency,
        "due_date": _iso(inv.due_date),
        "paid_date": _iso(inv.paid_date),
        "payment_link": inv.payment_link,
        "checkout_session_id": inv.checkout_session_id,
        "notes": inv.notes,
        "client": {
            "name": inv.client_name,
            "email": inv.client_email,
            "phone": inv.client_phone,
            "address": inv.client_address,
        },
        "project_id": inv.project_id,
        "source_quote_id": inv.source_quote_id,
        "service_lines": [
            {
                "id": s.id,
                "position": s.position,
                "name": s.name,
                "description": s.description,
                "unit_price": _money(s.unit_price),
                "quantity": _money(s.quantity),
                "unit": s.unit,
            }
            for s in inv.service_lines
        ] if inv.is_quote else [],
        "items": [
            {
                "id": it.id,
                "source_service_line_id": it.source_service_line_id,
                "name": it.name,
                "unit": it.unit,
                "quantity": _money(it.quantity),
                "unit_price": _money(it.unit_price),
                "total": _money(it.total),
            }
            for it in inv.items
        ],
        "created_at": _iso(inv.created_at),
    }


def _assignment_json(row: TransactionAssignment | None) -> dict | None:
    if row is None:
        return None
    return {
        "id": row.id,
        "transaction_id": row.transaction_id,
        "type": row.type.value,
        "state": row.state.value,
        "description": row.description,
        "notes": row.notes,
        "project_id": row.project_id,
        "client_id": row.client_id,
        "provider_id": row.provider_id,
        "invoice_id": row.invoice_id,
        "candidates": row.candidates,
        "amount": _money(row.amount),
        "fee": _money(row.fee),
        "currency": row.currency,
        "timestamp": _iso(row.timestamp),
        "counterparty_name": row.counterparty_name,
        "counterparty_mobile": row.counterparty_mobile,
    }


def _payout_json(row: PayoutAttempt | None) -> dict | None:
    if row is None:
        return None
    return {
        "id": row.id,
        "payout_id": row.payout_id,
        "transaction_id": row.transaction_id,
        "amount": _money(row.amount),
        "fee": _money(row.fee),
        "currency": row.currency,
        "mobile": row.mobile,
        "recipient_name": row.recipient_name,
        "reason": row.reason,
        "client_reference": row.client_reference,
        "status": row.status.value,
        "last_error_code": row.last_error_code,
        "provider_id": row.provider_id,
        "created_at": _iso(row.created_at),
        "status_checked_at": _iso(row.status_checked_at),
    }


def _movement_json(row: CompensatingMovement) -> dict:
    return {
        "id": row.id,
        "original_transaction_id": row.original_transaction_id,
        "kind": row.kind.value,
        "gateway_reference": row.gateway_reference,
        "amount": _money(row.amount),
        "fee": _money(row.fee),
        "currency": row.currency,
        "created_at": _iso(row.created_at),
    }


def _party_json(obj) -> dict:
    return {
        "id": obj.id,
        "name": obj.name,
        "email": obj.email,
        "phone": obj.phone,
        "company": obj.company,
    }


def _view_json(view: payments.TransactionView) -> dict:
    assignment = getattr(view.state, "assignment", None)
    return {
        "transaction": view.transaction.to_payload(),
        "assignment_state": view.state.name,
        "assignment": _assignment_json(assignment),
        "status": {"code": view.status.code, "label": view.status.label},
        "actions": view.actions,
        "payout": _payout_json(view.payout),
    }


# =========================================================
# Quotes & invoices
# =========================================================
@api.route("/quotes", methods=["POST"])
@login_required
def create_quote():
    body = _body()
    services = [invoicing.ServiceInput.from_dict(s) for s in (body.get("services") or []) if isinstance(s, dict)]
    quote = invoicing.create_quote(
        current_user.id,
        project_id=_parse_int(body.get("project_id")),
        services=services,
        due_date=_parse_date(body.get("due_date"), "due_date"),
        notes=(body.get("notes") or "").strip() or None,
        currency=(body.get("currency") or "").strip() or None,
    )
    return jsonify({"quote": _invoice_json(quote)}), 201


@api.route("/quotes/<int:quote_id>/issue", methods=["POST"])
@login_required
def issue_quote(quote_id):
    quote = invoicing.issue_quote(current_user.id, quote_id)
    return jsonify({"quote": _invoice_json(quote)})


@api.route("/quotes/<int:quote_id>/conversion-status", methods=["GET"])
@login_required
def conversion_status(quote_id):
    status = conversion.remaining(current_user.id, quote_id)
    return jsonify(status.to_dict())


@api.route("/quotes/<int:quote_id>/convert", methods=["POST"])
@login_required
@limiter.limit(MONEY_LIMIT)
def convert_quote(quote_id):
    body = _body()
    raw_selections = body.get("selections") or []
    if not isinstance(raw_selections, list):
        raise ValidationError("selections must be a list.", details={"field": "selections"})
    selections = [conversion.Selection.from_dict(s if isinstance(s, dict) else {}) for s in raw_selections]

    client = body.get("client") or {}
    override = conversion.ClientOverride(
        name=(client.get("name") or "").strip() or None,
        email=(client.get("email") or "").strip() or None,
        phone=(client.get("phone") or "").strip() or None,
        address=(client.get("address") or "").strip() or None,
    )
    options = conversion.PaymentOptions(
        mark_as_paid=_parse_bool(body.get("mark_as_paid")),
        paid_date=_parse_datetime(body.get("paid_date"), "paid_date"),
        due_date=_parse_date(body.get("due_date"), "due_date"),
        generate_payment_link=_parse_bool(body.get("generate_payment_link")),
        notes=(body.get("notes") or "").strip() or None,
    )

    gateway = _gateway_or_none() if options.generate_payment_link else None
    result = conversion.convert(current_user.id, quote_id, selections, override, options, gateway=gateway)
    return jsonify({
        "invoice": _invoice_json(result.invoice),
        "conversion_status": result.status.to_dict(),
        "warnings": result.warnings,
    }), 201


@api.route("/invoices/<int:invoice_id>/cancel", methods=["POST"])
@login_required
def cancel_invoice(invoice_id):
    invoice = invoicing.cancel_invoice(current_user.id, invoice_id)
    return jsonify({"invoice": _invoice_json(invoice)})


@api.route("/invoices/<int:invoice_id>/mark-paid", methods=["POST"])
@login_required
def mark_invoice_paid(invoice_id):
    body = _body()
    invoice = invoicing.mark_invoice_paid(
        current_user.id, invoice_id, paid_date=_parse_datetime(body.get("paid_date"), "paid_date")
    )
    return jsonify({"invoice": _invoice_json(invoice)})


@api.route("/invoices/refresh-overdue", methods=["POST"])
@login_required
def refresh_overdue():
    invoices = invoicing.refresh_overdue(current_user.id)
    return jsonify({"updated": [inv.id for inv in invoices]})


# =========================================================
# Wave transactions
# =========================================================
@api.route("/transactions", methods=["GET"])
@login_required
def list_transactions():
    day = _parse_date(request.args.get("date"), "date") or utcnow_naive().date()
    first = min(max(_parse_int(request.args.get("first")) or 50, 1), 200)
    page = _gateway().list_transactions(day.isoformat(), after=request.args.get("after") or None, first=first)
    views = payments.describe(current_user.id, page.items)
    return jsonify({
        "items": [_view_json(v) for v in views],
        "page_info": {"has_next_page": page.has_next_page, "end_cursor": page.end_cursor},
    })


@api.route("/transactions/<transaction_id>/assign", methods=["POST"])
@login_required
def assign_transaction(transaction_id):
    body = _body()
    tx = _transaction(transaction_id, body)
    result = assignments.assign(
        current_user.id,
        tx,
        body.get("type"),
        body.get("description"),
        links=assignments.AssignmentLinks.from_dict(body),
        notes=(body.get("notes") or "").strip() or None,
    )
    status = 202 if isinstance(result.state, Conflict) else 200
    return jsonify({
        "assignment": _assignment_json(result.assignment),
        "state": result.state.name,
        "match": result.match.to_dict() if result.match else None,
        "warnings": result.warnings,
    }), status


@api.route("/transactions/<transaction_id>/assignment", methods=["DELETE"])
@login_required
def unassign_transaction(transaction_id):
    deleted = assignments.unassign(current_user.id, transaction_id)
    return jsonify({"deleted": deleted})


@api.route("/transactions/<transaction_id>/refund", methods=["POST"])
@login_required
@limiter.limit(MONEY_LIMIT)
def refund_transaction(transaction_id):
    tx = _stored_transaction(transaction_id)
    result = payments.refund(current_user.id, tx, _gateway())
    return jsonify({
        "movement": _movement_json(result.movement),
        "method": result.method,
        "payout": _payout_json(result.payout),
        "warnings": result.warnings,
    })


@api.route("/transactions/<transaction_id>/reverse", methods=["POST"])
@login_required
@limiter.limit(MONEY_LIMIT)
def reverse_transaction(transaction_id):
    tx = _stored_transaction(transaction_id)
    result = payments.reverse(current_user.id, tx, _gateway())
    return jsonify({
        "movement": _movement_json(result.movement),
        "method": result.method,
        "payout": _payout_json(result.payout),
        "warnings": result.warnings,
    })


# =========================================================
# Conflicts
# =========================================================
@api.route("/conflicts", methods=["GET"])
@login_required
def list_conflicts():
    rows = assignments.list_conflicts(current_user.id)
    return jsonify({"conflicts": [_assignment_json(r) for r in rows]})


@api.route("/conflicts/<int:assignment_id>", methods=["GET"])
@login_required
def conflict_detail(assignment_id):
    detail = assignments.conflict_detail(current_user.id, assignment_id)
    return jsonify({
        "assignment": _assignment_json(detail["assignment"]),
        "sender_mobile": detail["sender_mobile"],
        "clients": [_party_json(c) for c in detail["clients"]],
        "providers": [_party_json(p) for p in detail["providers"]],
    })


@api.route("/conflicts/<int:assignment_id>/resolve", methods=["POST"])
@login_required
def resolve_conflict(assignment_id):
    body = _body()
    row = assignments.resolve_conflict(
        current_user.id,
        assignment_id,
        client_id=_parse_int(body.get("client_id")),
        provider_id=_parse_int(body.get("provider_id")),
    )
    return jsonify({"assignment": _assignment_json(row)})


# =========================================================
# Payouts & balance
# =========================================================
@api.route("/payouts", methods=["POST"])
@login_required
@limiter.limit(MONEY_LIMIT)
def send_payout():
    body = _body()
    attempt = payments.send_payout(
        current_user.id,
        _gateway(),
        amount=body.get("amount"),
        mobile=(body.get("mobile") or "").strip(),
        currency=(body.get("currency") or "").strip() or None,
        reason=(body.get("reason") or "").strip() or None,
        recipient_name=(body.get("name") or "").strip() or None,
        provider_id=_parse_int(body.get("provider_id")),
        client_reference=(body.get("client_reference") or "").strip() or None,
        idempotency_key=(request.headers.get("Idempotency-Key") or "").strip() or None,
    )
    return jsonify({"payout": _payout_json(attempt)}), 201


@api.route("/payouts/<int:attempt_id>", methods=["GET"])
@login_required
def payout_status(attempt_id):
    force = _parse_bool(request.args.get("refresh"))
    attempt = payments.refresh_payout_status(current_user.id, attempt_id, _gateway(), force=force)
    return jsonify({"payout": _payout_json(attempt)})


@api.route("/payouts/<int:attempt_id>/cancel", methods=["POST"])
@login_required
@limiter.limit(MONEY_LIMIT)
def cancel_payout(attempt_id):
    attempt = payments.cancel_pending(current_user.id, attempt_id, _gateway())
    return jsonify({"payout": _payout_json(attempt)})


@api.route("/balance", methods=["GET"])
@login_required
def balance():
    return jsonify(_gateway().get_balance())


# =========================================================
# Wave webhook (signed, no session)
# =========================================================
@api.route("/webhooks/wave", methods=["POST"])
@limiter.limit("120 per minute")
def wave_webhook():
    secret = (current_app.config.get("WAVE_WEBHOOK_SECRET") or "").strip()
    if not secret:
        current_app.logger.error("WAVE_WEBHOOK_SECRET is not configured; rejecting webhook.")
        return jsonify({"error_code": "webhook-not-configured", "message": "Webhook is not configured."}), 503

    raw = request.get_data(cache=True)
    if not webhooks.verify_signature(raw, request.headers.get("x-wave-signature"), secret):
        current_app.logger.warning("Wave webhook with an invalid signature rejected.")
        return jsonify({"error_code": "invalid-signature", "message": "Invalid signature."}), 401

    payload = request.get_json(silent=True)
    if payload is None:
        raise ValidationError("Webhook body must be JSON.")

    outcome = webhooks.handle_event(payload)
    return jsonify(outcome.to_dict())


@api.route("/webhooks/wave", methods=["GET"])
def wave_webhook_ping():
    return jsonify({"message": "Wave webhook endpoint active."})
