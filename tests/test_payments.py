# tests/test_payments.py
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from wavebooks.extensions import db
from wavebooks.models import (
    AssignmentType,
    CompensatingMovement,
    CompensationKind,
    PayoutAttempt,
    PayoutStatus,
)
from wavebooks.services import payments
from wavebooks.services.assignments import AssignmentLinks, assign, get_assignment
from wavebooks.services.errors import (
    GatewayError,
    IneligibleActionError,
    ValidationError,
    WindowExpiredError,
)
from wavebooks.services.states import Assigned, Conflict, Resolved, Unassigned
from wavebooks.services.wave_client import CheckoutSession
from wavebooks.utils.clock import utcnow_naive


def _attempt(status=PayoutStatus.PROCESSING, age=timedelta(minutes=5), checked=None, **kwargs):
    now = utcnow_naive()
    return PayoutAttempt(
        payout_id=kwargs.pop("payout_id", "pt-1"),
        amount=Decimal("15000"),
        mobile="+221770000000",
        idempotency_key="k",
        status=status,
        created_at=now - age,
        status_checked_at=(now - checked) if checked is not None else None,
        **kwargs,
    )


# =========================================================
# Reverse
# =========================================================
def test_reverse_outside_window_never_calls_gateway(user, make_tx, gateway):
    tx = make_tx(amount="-15000", age=timedelta(days=4))

    with pytest.raises(WindowExpiredError) as exc:
        payments.reverse(user.id, tx, gateway)

    assert exc.value.http_status == 422
    assert exc.value.details["transaction_id"] == tx.id
    assert gateway.calls == []
    assert CompensatingMovement.query.count() == 0


def test_reverse_within_window(user, make_tx, gateway):
    tx = make_tx(amount="-15000", age=timedelta(days=1), payout_id="pt-77")

    result = payments.reverse(user.id, tx, gateway)

    assert gateway.call_names == ["reverse_payout"]
    assert gateway.calls[0][1]["payout_id"] == "pt-77"
    assert result.movement.kind == CompensationKind.REVERSAL
    assert result.movement.amount == Decimal("15000")

    view = payments.describe(user.id, [tx])[0]
    assert view.status.code == "reversed"
    assert view.status.label == "Annulé"
    assert view.actions == ["assign"]

    with pytest.raises(IneligibleActionError) as exc:
        payments.reverse(user.id, tx, gateway)
    assert exc.value.code == "already-compensated"


def test_reverse_keeps_gateway_error_code(user, make_tx, gateway):
    tx = make_tx(amount="-15000", age=timedelta(hours=2))
    gateway.fail("reverse_payout", "insufficient-funds")

    with pytest.raises(GatewayError) as exc:
        payments.reverse(user.id, tx, gateway)

    assert exc.value.code == "insufficient-funds"
    assert CompensatingMovement.query.count() == 0


def test_reverse_rejects_inbound_and_reversals(user, make_tx, gateway):
    with pytest.raises(IneligibleActionError):
        payments.reverse(user.id, make_tx(amount="5000"), gateway)
    with pytest.raises(IneligibleActionError):
        payments.reverse(user.id, make_tx(amount="-5000", is_reversal=True), gateway)
    assert gateway.calls == []


def test_reverse_refuses_payout_still_processing(user, make_tx, gateway):
    attempt = _attempt(user_id=user.id, payout_id="pt-9")
    db.session.add(attempt)
    db.session.commit()
    tx = make_tx(amount="-15000", payout_id="pt-9")

    with pytest.raises(IneligibleActionError) as exc:
        payments.reverse(user.id, tx, gateway)

    assert exc.value.code == "payout-still-processing"
    assert gateway.calls == []


# =========================================================
# Refund
# =========================================================
def test_refund_through_checkout_session(user, project, make_tx, gateway):
    tx = make_tx(amount="10000", counterparty_mobile="+221770000000", client_reference="INV-2026-001")
    assign(user.id, tx, "revenue", "Paiement", links=AssignmentLinks(project_id=project.id))
    gateway.checkout_session = CheckoutSession(id="cos-9", launch_url=None)

    result = payments.refund(user.id, tx, gateway)

    assert gateway.call_names == ["find_checkout_session", "refund_checkout_session"]
    assert gateway.calls[0][1]["client_reference"] == "INV-2026-001"
    assert result.method == "checkout_refund"
    assert result.movement.kind == CompensationKind.REFUND
    assert result.movement.gateway_reference == "T_REFUND_1"

    expense = get_assignment(user.id, "T_REFUND_1")
    assert expense.type == AssignmentType.EXPENSE
    assert expense.amount == Decimal("-10000")
    assert expense.project_id == project.id

    view = payments.describe(user.id, [tx])[0]
    assert view.status.code == "refunded"
    assert view.status.label == "Remboursement"
    assert view.actions == ["unassign"]


def test_refund_falls_back_to_payout(user, make_tx, gateway):
    tx = make_tx(amount="7500", counterparty_mobile="+221770000000", counterparty_name="Moussa")

    result = payments.refund(user.id, tx, gateway)

    assert gateway.call_names == ["find_checkout_session", "send_payout"]
    sent = gateway.calls[1][1]
    assert sent["amount"] == Decimal("7500")
    assert sent["mobile"] == "+221770000000"
    assert sent["client_reference"] == f"refund_{tx.id}"
    assert sent["idempotency_key"] == f"refund-{tx.id}"
    assert len(sent["reason"]) <= payments.REASON_MAX
    assert result.method == "send_money"
    assert result.payout.payout_id == "pt-1"
    assert get_assignment(user.id, "T_PAYOUT_1").amount == Decimal("-7500")


def test_refund_without_destination(user, make_tx, gateway):
    tx = make_tx(amount="7500")

    with pytest.raises(IneligibleActionError) as exc:
        payments.refund(user.id, tx, gateway)

    assert exc.value.code == "refund-no-destination"
    assert "send_payout" not in gateway.call_names
    assert CompensatingMovement.query.count() == 0


def test_refund_only_once(user, make_tx, gateway):
    tx = make_tx(amount="7500", counterparty_mobile="+221770000000")
    payments.refund(user.id, tx, gateway)

    with pytest.raises(IneligibleActionError) as exc:
        payments.refund(user.id, tx, gateway)

    assert exc.value.code == "already-refunded"
    assert gateway.call_names.count("send_payout") == 1


def test_failed_refund_payout_records_nothing_and_can_be_retried(user, make_tx, gateway):
    tx = make_tx(amount="7500", counterparty_mobile="+221770000000")
    gateway.payout_status = "failed"
    gateway.payout_error = "recipient-limit-exceeded"

    with pytest.raises(GatewayError) as exc:
        payments.refund(user.id, tx, gateway)

    assert exc.value.code == "recipient-limit-exceeded"
    assert CompensatingMovement.query.count() == 0
    assert get_assignment(user.id, "T_PAYOUT_1") is None
    failed = PayoutAttempt.query.one()
    assert failed.status == PayoutStatus.FAILED
    assert failed.last_error_code == "recipient-limit-exceeded"
    assert payments.describe(user.id, [tx])[0].status.code == "completed"

    gateway.payout_status = "succeeded"
    gateway.payout_error = None
    result = payments.refund(user.id, tx, gateway)

    assert result.movement.gateway_reference == "T_PAYOUT_2"
    keys = [kw["idempotency_key"] for name, kw in gateway.calls if name == "send_payout"]
    assert keys == [f"refund-{tx.id}", f"refund-{tx.id}-2"]


def test_failed_payout_without_code(user, make_tx, gateway):
    gateway.payout_status = "failed"

    with pytest.raises(GatewayError) as exc:
        payments.refund(user.id, make_tx(amount="7500", counterparty_mobile="+221770000000"), gateway)

    assert exc.value.code == "payout-failed"


def test_refund_rejects_outbound_and_reversals(user, make_tx, gateway):
    with pytest.raises(IneligibleActionError) as exc:
        payments.refund(user.id, make_tx(amount="-7500"), gateway)
    assert exc.value.code == "refund-requires-inbound"

    with pytest.raises(IneligibleActionError) as exc:
        payments.refund(user.id, make_tx(amount="7500", is_reversal=True), gateway)
    assert exc.value.code == "reversal-not-refundable"
    assert gateway.calls == []


def test_failed_checkout_refund_does_not_fall_back(user, make_tx, gateway):
    tx = make_tx(amount="10000", counterparty_mobile="+221770000000")
    gateway.checkout_session = CheckoutSession(id="cos-9", launch_url=None)
    gateway.fail("refund_checkout_session", "checkout-refund-failed")

    with pytest.raises(GatewayError):
        payments.refund(user.id, tx, gateway)

    assert "send_payout" not in gateway.call_names
    assert CompensatingMovement.query.count() == 0


# =========================================================
# Available actions
# =========================================================
def test_actions_for_inbound_and_outbound(app, make_tx):
    now = utcnow_naive()
    state = Unassigned("T")

    assert payments.available_actions(make_tx(amount="100"), state, None, None, now) == ["assign", "refund"]
    assert payments.available_actions(make_tx(amount="-100", age=timedelta(days=1)), state, None, None, now) == [
        "assign",
        "reverse",
    ]
    assert payments.available_actions(make_tx(amount="-100", age=timedelta(days=4)), state, None, None, now) == [
        "assign"
    ]
    assert payments.available_actions(make_tx(amount="-100", is_reversal=True), state, None, None, now) == [
        "assign"
    ]


def test_cancel_and_reverse_are_exclusive(app, make_tx):
    now = utcnow_naive()
    tx = make_tx(amount="-15000", age=timedelta(minutes=5))
    state = Unassigned(tx.id)

    fresh = _attempt(age=timedelta(minutes=5))
    assert payments.available_actions(tx, state, None, fresh, now) == ["assign", "cancel"]

    old = _attempt(age=timedelta(hours=2))
    assert payments.available_actions(tx, state, None, old, now) == ["assign", "reverse"]

    recently_checked = _attempt(age=timedelta(hours=2), checked=timedelta(seconds=30))
    assert payments.available_actions(tx, state, None, recently_checked, now) == ["assign", "cancel"]

    failed = _attempt(status=PayoutStatus.FAILED)
    assert payments.available_actions(tx, state, None, failed, now) == ["assign"]


def test_booked_transactions_offer_unassign(app, make_tx):
    now = utcnow_naive()
    tx = make_tx(amount="100")

    assert payments.available_actions(tx, Assigned(assignment=None), None, None, now) == ["unassign", "refund"]
    assert payments.available_actions(tx, Resolved(assignment=None), None, None, now) == ["unassign", "refund"]


def test_only_unassign_while_in_conflict(app, make_tx):
    tx = make_tx(amount="100")
    state = Conflict(assignment=None, candidates={})

    assert payments.available_actions(tx, state, None, None, utcnow_naive()) == ["unassign"]


# =========================================================
# Payouts and pending cancellation
# =========================================================
def test_send_payout_is_idempotent(user, gateway):
    first = payments.send_payout(
        user.id, gateway, amount="15000", mobile="+221770000000", reason="Prestation", idempotency_key="abc"
    )
    again = payments.send_payout(
        user.id, gateway, amount="15000", mobile="+221770000000", reason="Prestation", idempotency_key="abc"
    )

    assert again.id == first.id
    assert gateway.call_names == ["send_payout"]
    assert first.status == PayoutStatus.PROCESSING
    assert first.currency == "XOF"


def test_payout_recorded_concurrently_is_returned(user, gateway, monkeypatch):
    real = gateway.send_payout

    def racing(**kwargs):
        paid = real(**kwargs)
        # Another request with the same key records the payout first
        db.session.add(PayoutAttempt(
            user_id=user.id,
            payout_id=paid.id,
            amount=paid.amount,
            mobile=paid.mobile,
            idempotency_key=kwargs["idempotency_key"],
        ))
        db.session.commit()
        return paid

    monkeypatch.setattr(gateway, "send_payout", racing)

    attempt = payments.send_payout(user.id, gateway, amount="15000", mobile="+221770000000", idempotency_key="abc")

    assert attempt.payout_id == "pt-1"
    assert PayoutAttempt.query.count() == 1


def test_idempotency_key_is_unique_per_account(user, other_user):
    db.session.add_all([
        _attempt(user_id=user.id, payout_id="pt-1"),
        _attempt(user_id=other_user.id, payout_id="pt-2"),
    ])
    db.session.commit()

    db.session.add(_attempt(user_id=user.id, payout_id="pt-3"))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": "0", "mobile": "+221770000000"},
        {"amount": "abc", "mobile": "+221770000000"},
        {"amount": "100", "mobile": "123"},
        {"amount": "100", "mobile": "+221770000000", "reason": "x" * 41},
    ],
)
def test_send_payout_validation(user, gateway, kwargs):
    with pytest.raises(ValidationError):
        payments.send_payout(user.id, gateway, **kwargs)
    assert gateway.calls == []


def _recorded_payout(user, gateway, age):
    attempt = payments.send_payout(user.id, gateway, amount="15000", mobile="+221770000000")
    attempt.created_at = utcnow_naive() - age
    attempt.status_checked_at = None
    db.session.commit()
    gateway.calls.clear()
    return attempt


def test_cancel_pending_when_status_check_fails_but_payout_is_young(user, gateway):
    attempt = _recorded_payout(user, gateway, timedelta(minutes=10))
    gateway.fail("get_payout", "gateway-unavailable", status_code=None)

    payments.cancel_pending(user.id, attempt.id, gateway)

    assert gateway.call_names == ["get_payout", "cancel_pending_payout"]
    assert attempt.status == PayoutStatus.CANCELLED


def test_cancel_pending_refused_when_old_and_unverifiable(user, gateway):
    attempt = _recorded_payout(user, gateway, timedelta(minutes=45))
    gateway.fail("get_payout", "gateway-unavailable", status_code=None)

    with pytest.raises(WindowExpiredError) as exc:
        payments.cancel_pending(user.id, attempt.id, gateway)

    assert exc.value.code == "payout-not-cancellable"
    assert "cancel_pending_payout" not in gateway.call_names
    assert attempt.status == PayoutStatus.PROCESSING


def test_cancel_pending_when_gateway_reports_success(user, gateway):
    attempt = _recorded_payout(user, gateway, timedelta(minutes=10))
    gateway.payout_status = "succeeded"

    with pytest.raises(IneligibleActionError) as exc:
        payments.cancel_pending(user.id, attempt.id, gateway)

    assert exc.value.code == "payout-already-processed"
    assert attempt.status == PayoutStatus.SUCCEEDED
    assert attempt.status_checked_at is not None
    assert "cancel_pending_payout" not in gateway.call_names


def test_refresh_payout_status_uses_fresh_cache(user, gateway):
    attempt = payments.send_payout(user.id, gateway, amount="15000", mobile="+221770000000")
    gateway.calls.clear()

    payments.refresh_payout_status(user.id, attempt.id, gateway)
    assert gateway.calls == []

    gateway.payout_status = "succeeded"
    payments.refresh_payout_status(user.id, attempt.id, gateway, force=True)
    assert gateway.call_names == ["get_payout"]
    assert attempt.status == PayoutStatus.SUCCEEDED
