# wavebooks/services/payments.py
"""
Refunds, reversals, pending-payout cancellation and outbound payouts.

Every money-moving command follows the same order: check eligibility from
local data, call Wave with no row lock held, then write the outcome. If Wave
refuses, nothing local changes and the gateway's error code is passed on.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from wavebooks.extensions import db
from wavebooks.models import (
    CompensatingMovement,
    CompensationKind,
    PayoutAttempt,
    PayoutStatus,
    Provider,
)
from wavebooks.services.assignments import assignments_for, get_assignment, record_expense
from wavebooks.services.db_helpers import commit_or_rollback, get_owned
from wavebooks.services.errors import (
    ConsistencyError,
    GatewayError,
    IneligibleActionError,
    ValidationError,
    WindowExpiredError,
)
from wavebooks.services.states import AssignmentView, Conflict, Unassigned, state_of
from wavebooks.services.wave_client import ExternalTransaction, GatewayPayout
from wavebooks.utils.clock import utcnow_naive
from wavebooks.utils.phones import digits_only


ACTION_ASSIGN = "assign"
ACTION_UNASSIGN = "unassign"
ACTION_REFUND = "refund"
ACTION_REVERSE = "reverse"
ACTION_CANCEL = "cancel"

STATUS_LABELS = {
    "refunded": "Remboursement",
    "reversed": "Annulé",
    "reversal": "Annulation",
    "cancelled": "Annulé avant traitement",
    "failed": "Échoué",
    "processing": "En cours",
    "completed": "Terminé",
}

# Wave caps payment_reason at 40 characters
REASON_MAX = 40

CLOSED_PAYOUT_STATUSES = {PayoutStatus.FAILED, PayoutStatus.CANCELLED, PayoutStatus.REVERSED}

ALREADY_CODES = {
    PayoutStatus.SUCCEEDED: "payout-already-processed",
    PayoutStatus.FAILED: "payout-already-failed",
    PayoutStatus.REVERSED: "payout-already-reversed",
    PayoutStatus.CANCELLED: "payout-already-cancelled",
}


# =========================================================
# Types
# =========================================================
@dataclass(frozen=True)
class PaymentStatus:
    code: str
    label: str

    @classmethod
    def of(cls, code: str) -> "PaymentStatus":
        return cls(code, STATUS_LABELS[code])


@dataclass
class TransactionView:
    transaction: ExternalTransaction
    state: AssignmentView
    status: PaymentStatus
    actions: list[str]
    compensation: Optional[CompensatingMovement] = None
    payout: Optional[PayoutAttempt] = None


@dataclass
class MovementResult:
    movement: CompensatingMovement
    method: str
    gateway_response: dict = field(default_factory=dict)
    payout: Optional[PayoutAttempt] = None
    warnings: list[dict] = field(default_factory=list)


# =========================================================
# Local lookups
# =========================================================
def compensation_for(user_id: int, transaction_id: str) -> Optional[CompensatingMovement]:
    return CompensatingMovement.query.filter_by(
        user_id=user_id, original_transaction_id=transaction_id
    ).first()


def compensations_for(user_id: int, transaction_ids: list[str]) -> dict[str, CompensatingMovement]:
    if not transaction_ids:
        return {}
    rows = CompensatingMovement.query.filter(
        CompensatingMovement.user_id == user_id,
        CompensatingMovement.original_transaction_id.in_(transaction_ids),
    ).all()
    return {row.original_transaction_id: row for row in rows}


def payout_for(user_id: int, transaction: ExternalTransaction) -> Optional[PayoutAttempt]:
    conditions = [PayoutAttempt.transaction_id == transaction.id]
    if transaction.payout_id:
        conditions.append(PayoutAttempt.payout_id == transaction.payout_id)
    return (
        PayoutAttempt.query.filter(PayoutAttempt.user_id == user_id, or_(*conditions))
        .order_by(PayoutAttempt.created_at.desc())
        .first()
    )


def payouts_for(user_id: int, transactions: list[ExternalTransaction]) -> dict[str, PayoutAttempt]:
    tx_ids = [t.id for t in transactions]
    payout_ids = [t.payout_id for t in transactions if t.payout_id]
    if not tx_ids:
        return {}

    conditions = [PayoutAttempt.transaction_id.in_(tx_ids)]
    if payout_ids:
        conditions.append(PayoutAttempt.payout_id.in_(payout_ids))
    rows = PayoutAttempt.query.filter(PayoutAttempt.user_id == user_id, or_(*conditions)).all()

    by_tx = {r.transaction_id: r for r in rows if r.transaction_id}
    by_payout = {r.payout_id: r for r in rows if r.payout_id}
    result = {}
    for t in transactions:
        found = by_tx.get(t.id) or (by_payout.get(t.payout_id) if t.payout_id else None)
        if found is not None:
            result[t.id] = found
    return result


# =========================================================
# Time-based rules
# =========================================================
def within_reversal_window(transaction: ExternalTransaction, now: datetime) -> bool:
    window = timedelta(days=current_app.config.get("REVERSAL_WINDOW_DAYS", 3))
    return now - transaction.timestamp <= window


def presumed_processing(payout: PayoutAttempt, now: datetime) -> bool:
    """
    Whether a payout should be treated as still processing without asking Wave.

    A recently checked "processing" status is trusted. Past that, a payout is
    presumed in flight only while younger than PROCESSING_HEURISTIC_MINUTES;
    older ones have most likely settled and are no longer cancellable.
    """
    if payout.status != PayoutStatus.PROCESSING:
        return False

    stale_after = timedelta(seconds=current_app.config.get("PAYOUT_STATUS_STALE_SECONDS", 300))
    if payout.status_checked_at and now - payout.status_checked_at <= stale_after:
        return True

    heuristic = timedelta(minutes=current_app.config.get("PROCESSING_HEURISTIC_MINUTES", 30))
    return now - payout.created_at <= heuristic


# =========================================================
# Derived status / actions (computed on every read)
# =========================================================
def derived_status(
    transaction: ExternalTransaction,
    compensation: Optional[CompensatingMovement],
    payout: Optional[PayoutAttempt],
    now: datetime,
) -> PaymentStatus:
    if compensation is not None:
        if compensation.kind == CompensationKind.REFUND:
            return PaymentStatus.of("refunded")
        return PaymentStatus.of("reversed")
    if transaction.is_reversal:
        return PaymentStatus.of("reversal")
    if payout is not None:
        if payout.status == PayoutStatus.REVERSED:
            return PaymentStatus.of("reversed")
        if payout.status == PayoutStatus.CANCELLED:
            return PaymentStatus.of("cancelled")
        if payout.status == PayoutStatus.FAILED:
            return PaymentStatus.of("failed")
        if presumed_processing(payout, now):
            return PaymentStatus.of("processing")
    return PaymentStatus.of("completed")


def _money_actions(
    transaction: ExternalTransaction,
    compensation: Optional[CompensatingMovement],
    payout: Optional[PayoutAttempt],
    now: datetime,
) -> list[str]:
    if transaction.is_reversal or compensation is not None:
        return []

    if transaction.is_inbound:
        return [ACTION_REFUND]

    if not transaction.is_outbound:
        return []
    if payout is not None and payout.status in CLOSED_PAYOUT_STATUSES:
        return []
    if payout is not None and presumed_processing(payout, now):
        return [ACTION_CANCEL]
    if within_reversal_window(transaction, now):
        return [ACTION_REVERSE]
    return []


def available_actions(
    transaction: ExternalTransaction,
    state: AssignmentView,
    compensation: Optional[CompensatingMovement],
    payout: Optional[PayoutAttempt],
    now: datetime,
) -> list[str]:
    """
    Actions offered for a transaction: assign or unassign first, then the
    money actions. Reverse and cancel are never offered together, and no
    money action is offered while the counterparty is still ambiguous.
    """
    booking = ACTION_ASSIGN if isinstance(state, Unassigned) else ACTION_UNASSIGN
    if isinstance(state, Conflict):
        return [booking]
    return [booking] + _money_actions(transaction, compensation, payout, now)


def describe(user_id: int, transactions: list[ExternalTransaction], now: Optional[datetime] = None) -> list[TransactionView]:
    """Enrich gateway transactions with assignment state, derived status and actions."""
    now = now or utcnow_naive()
    ids = [t.id for t in transactions]
    assignments = assignments_for(user_id, ids)
    compensations = compensations_for(user_id, ids)
    payouts = payouts_for(user_id, transactions)

    views = []
    for t in transactions:
        state = state_of(t.id, assignments.get(t.id))
        compensation = compensations.get(t.id)
        payout = payouts.get(t.id)
        views.append(
            TransactionView(
                transaction=t,
                state=state,
                status=derived_status(t, compensation, payout, now),
                actions=available_actions(t, state, compensation, payout, now),
                compensation=compensation,
                payout=payout,
            )
        )
    return views


# =========================================================
# Helpers
# =========================================================
def _ineligible(message: str, code: str, transaction: ExternalTransaction) -> IneligibleActionError:
    return IneligibleActionError(message, code=code, details={"transaction_id": transaction.id})


def _payout_status(value: str) -> PayoutStatus:
    try:
        return PayoutStatus(value)
    except ValueError:
        return PayoutStatus.PROCESSING


def _apply_gateway_status(attempt: PayoutAttempt, fresh: GatewayPayout, now: datetime) -> None:
    attempt.status = _payout_status(fresh.status)
    attempt.status_checked_at = now
    attempt.last_error_code = fresh.error_code
    if fresh.transaction_id and not attempt.transaction_id:
        attempt.transaction_id = fresh.transaction_id
    if fresh.fee:
        attempt.fee = fresh.fee


def _record_compensation(action: str) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # Wave already moved the money; a concurrent request recorded it first
        current_app.logger.error("%s succeeded at Wave but was already recorded locally", action)
        raise ConsistencyError(f"{action} was recorded concurrently. Reload to see the current state.")


# =========================================================
# Refund (inbound)
# =========================================================
def refund(user_id: int, transaction: ExternalTransaction, gateway, now: Optional[datetime] = None) -> MovementResult:
    """
    Send an inbound payment back to its payer: refund the checkout session
    that produced it, or pay the counterparty back when there is none.
    """
    now = now or utcnow_naive()

    if not transaction.is_inbound:
        raise _ineligible("Only received payments can be refunded.", "refund-requires-inbound", transaction)
    if transaction.is_reversal:
        raise _ineligible("A reversal cannot be refunded.", "reversal-not-refundable", transaction)
    if compensation_for(user_id, transaction.id) is not None:
        raise _ineligible("This payment has already been refunded.", "already-refunded", transaction)

    amount = abs(transaction.amount)
    description = f"Remboursement transaction {transaction.id}"
    attempt = None

    session = gateway.find_checkout_session(transaction.id, transaction.client_reference)
    if session is not None:
        response = gateway.refund_checkout_session(session.id)
        method = "checkout_refund"
        refund_id = str(response.get("transaction_id") or response.get("id") or f"refund_{transaction.id}")
        fee = Decimal(str(response.get("fee") or 0))
    else:
        if not transaction.counterparty_mobile:
            raise _ineligible("The payer's mobile number is unknown.", "refund-no-destination", transaction)
        reference = f"refund_{transaction.id}"
        failed_before = PayoutAttempt.query.filter_by(
            user_id=user_id, client_reference=reference, status=PayoutStatus.FAILED
        ).count()
        # A failed payout is final at Wave; a retry needs a fresh key
        idempotency_key = f"refund-{transaction.id}" + (f"-{failed_before + 1}" if failed_before else "")
        paid = gateway.send_payout(
            amount=amount,
            currency=transaction.currency,
            mobile=transaction.counterparty_mobile,
            name=transaction.counterparty_name,
            reason=description[:REASON_MAX],
            client_reference=reference,
            idempotency_key=idempotency_key,
        )
        method = "send_money"
        refund_id = paid.transaction_id or paid.id
        fee = paid.fee
        response = {"id": paid.id, "status": paid.status, "transaction_id": paid.transaction_id}
        attempt = PayoutAttempt(
            user_id=user_id,
            payout_id=paid.id or None,
            transaction_id=paid.transaction_id,
            amount=amount,
            fee=fee,
            currency=transaction.currency,
            mobile=transaction.counterparty_mobile,
            recipient_name=transaction.counterparty_name,
            reason=description[:REASON_MAX],
            client_reference=reference,
            idempotency_key=idempotency_key,
            status=_payout_status(paid.status),
            last_error_code=paid.error_code,
            status_checked_at=now,
        )
        db.session.add(attempt)
        if attempt.status == PayoutStatus.FAILED:
            commit_or_rollback("Record failed refund payout")
            current_app.logger.warning(
                "Refund payout %s for transaction %s failed (%s)", paid.id, transaction.id, paid.error_code
            )
            raise GatewayError(
                paid.error_code or "payout-failed",
                "Wave could not pay the refund.",
                payload={"payout_id": paid.id, "transaction_id": transaction.id},
            )

    movement = CompensatingMovement(
        user_id=user_id,
        original_transaction_id=transaction.id,
        kind=CompensationKind.REFUND,
        gateway_reference=refund_id,
        amount=amount,
        fee=fee,
        currency=transaction.currency,
    )
    db.session.add(movement)

    original = get_assignment(user_id, transaction.id)
    refund_tx = ExternalTransaction(
        id=refund_id,
        amount=-amount,
        fee=fee,
        currency=transaction.currency,
        timestamp=now,
        counterparty_mobile=transaction.counterparty_mobile,
        counterparty_name=transaction.counterparty_name,
        payment_reason=description,
        client_reference=f"refund_{transaction.id}",
    )
    record_expense(
        user_id,
        refund_tx,
        description,
        project_id=original.project_id if original else None,
        client_id=original.client_id if original else None,
    )

    _record_compensation("Refund")
    current_app.logger.info(
        "Refunded %s %s for transaction %s via %s (%s)",
        amount, transaction.currency, transaction.id, method, refund_id,
    )
    return MovementResult(movement=movement, method=method, gateway_response=response, payout=attempt)


# =========================================================
# Reverse (outbound, settled)
# =========================================================
def reverse(user_id: int, transaction: ExternalTransaction, gateway, now: Optional[datetime] = None) -> MovementResult:
    """
    Pull back a settled outbound payment. The age limit is enforced here,
    before Wave is contacted.
    """
    now = now or utcnow_naive()

    if not transaction.is_outbound:
        raise _ineligible("Only sent payments can be reversed.", "reverse-requires-outbound", transaction)
    if transaction.is_reversal:
        raise _ineligible("A reversal cannot itself be reversed.", "reversal-not-reversible", transaction)
    if compensation_for(user_id, transaction.id) is not None:
        raise _ineligible("This payment has already been reversed or refunded.", "already-compensated", transaction)

    attempt = payout_for(user_id, transaction)
    if attempt is not None and attempt.status in CLOSED_PAYOUT_STATUSES:
        raise _ineligible(
            f"This payout is {attempt.status.value}.", ALREADY_CODES[attempt.status], transaction
        )
    if attempt is not None and presumed_processing(attempt, now):
        raise _ineligible(
            "This payout is still processing; cancel it instead.", "payout-still-processing", transaction
        )

    if not within_reversal_window(transaction, now):
        age_days = (now - transaction.timestamp).total_seconds() / 86400
        raise WindowExpiredError(
            "Payments can only be reversed within "
            f"{current_app.config.get('REVERSAL_WINDOW_DAYS', 3)} days.",
            details={"transaction_id": transaction.id, "age_days": round(age_days, 2)},
        )

    payout_id = (attempt.payout_id if attempt is not None and attempt.payout_id else None) \
        or transaction.payout_id or transaction.id

    response = gateway.reverse_payout(payout_id) or {}

    if attempt is not None:
        attempt.status = PayoutStatus.REVERSED
        attempt.status_checked_at = now

    movement = CompensatingMovement(
        user_id=user_id,
        original_transaction_id=transaction.id,
        kind=CompensationKind.REVERSAL,
        gateway_reference=payout_id,
        amount=abs(transaction.amount),
        fee=Decimal("0"),
        currency=transaction.currency,
    )
    db.session.add(movement)

    _record_compensation("Reversal")
    current_app.logger.info("Reversed payout %s (transaction %s)", payout_id, transaction.id)
    return MovementResult(movement=movement, method="payout_reversal", gateway_response=response, payout=attempt)


# =========================================================
# Payouts
# =========================================================
def send_payout(
    user_id: int,
    gateway,
    *,
    amount,
    mobile: str,
    currency: Optional[str] = None,
    reason: Optional[str] = None,
    recipient_name: Optional[str] = None,
    provider_id: Optional[int] = None,
    client_reference: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutAttempt:
    """
    Send money to a mobile number (typically a provider) and record the
    attempt. A repeated idempotency key returns the recorded attempt.
    """
    now = now or utcnow_naive()
    try:
        amount = Decimal(str(amount))
    except ArithmeticError:
        raise ValidationError("Invalid amount.", details={"field": "amount"})
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be positive.", details={"field": "amount"})
    if len(digits_only(mobile)) < current_app.config.get("PHONE_MATCH_DIGITS", 8):
        raise ValidationError("Invalid mobile number.", code="malformed-phone", details={"field": "mobile"})
    if reason and len(reason) > REASON_MAX:
        raise ValidationError(f"Reason is limited to {REASON_MAX} characters.", details={"field": "reason"})

    if provider_id is not None:
        provider = get_owned(Provider, user_id, provider_id)
        recipient_name = recipient_name or provider.name

    idempotency_key = idempotency_key or uuid.uuid4().hex
    existing = PayoutAttempt.query.filter_by(user_id=user_id, idempotency_key=idempotency_key).first()
    if existing is not None:
        return existing

    currency = currency or current_app.config.get("DEFAULT_CURRENCY", "XOF")
    paid = gateway.send_payout(
        amount=amount,
        currency=currency,
        mobile=mobile,
        name=recipient_name,
        reason=reason,
        client_reference=client_reference,
        idempotency_key=idempotency_key,
    )

    attempt = PayoutAttempt(
        user_id=user_id,
        payout_id=paid.id or None,
        transaction_id=paid.transaction_id,
        amount=amount,
        fee=paid.fee,
        currency=currency,
        mobile=mobile,
        recipient_name=recipient_name,
        reason=reason,
        client_reference=client_reference,
        idempotency_key=idempotency_key,
        status=_payout_status(paid.status),
        last_error_code=paid.error_code,
        provider_id=provider_id,
        status_checked_at=now,
    )
    db.session.add(attempt)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # A concurrent request with the same key recorded the payout first
        existing = PayoutAttempt.query.filter_by(user_id=user_id, idempotency_key=idempotency_key).first()
        if existing is None:
            raise
        current_app.logger.warning("Payout with idempotency key %s was already recorded", idempotency_key)
        return existing
    current_app.logger.info("Payout %s of %s %s sent to %s", paid.id, amount, currency, mobile)
    return attempt


def refresh_payout_status(
    user_id: int, attempt_id: int, gateway, *, force: bool = False, now: Optional[datetime] = None
) -> PayoutAttempt:
    """Re-read a payout's status from Wave unless the cached one is final or fresh."""
    now = now or utcnow_naive()
    attempt = get_owned(PayoutAttempt, user_id, attempt_id)
    if not attempt.payout_id:
        return attempt
    if not force and attempt.status != PayoutStatus.PROCESSING:
        return attempt

    stale_after = timedelta(seconds=current_app.config.get("PAYOUT_STATUS_STALE_SECONDS", 300))
    if not force and attempt.status_checked_at and now - attempt.status_checked_at <= stale_after:
        return attempt

    fresh = gateway.get_payout(attempt.payout_id)
    _apply_gateway_status(attempt, fresh, now)
    commit_or_rollback("Refresh payout status")
    return attempt


def cancel_pending(user_id: int, attempt_id: int, gateway, now: Optional[datetime] = None) -> PayoutAttempt:
    """
    Stop a payout Wave has not finished processing.

    The status is refreshed first. When Wave cannot be reached the cached
    status decides, through presumed_processing().
    """
    now = now or utcnow_naive()
    attempt = get_owned(PayoutAttempt, user_id, attempt_id)

    if attempt.status != PayoutStatus.PROCESSING:
        raise IneligibleActionError(
            f"This payout is {attempt.status.value}.",
            code=ALREADY_CODES[attempt.status],
            details={"payout_id": attempt.payout_id},
        )
    if not attempt.payout_id:
        raise IneligibleActionError("This payout has no Wave reference.", code="payout-not-cancellable")

    try:
        fresh = gateway.get_payout(attempt.payout_id)
    except GatewayError as exc:
        current_app.logger.warning(
            "Status check for payout %s failed (%s); using cached status", attempt.payout_id, exc.code
        )
        if not presumed_processing(attempt, now):
            raise WindowExpiredError(
                "The payout status could not be confirmed and it is too old to still be processing.",
                code="payout-not-cancellable",
                details={"payout_id": attempt.payout_id, "status_check_error": exc.code},
            )
    else:
        _apply_gateway_status(attempt, fresh, now)
        if attempt.status != PayoutStatus.PROCESSING:
            commit_or_rollback("Refresh payout status")
            raise IneligibleActionError(
                f"This payout is {attempt.status.value}.",
                code=ALREADY_CODES[attempt.status],
                details={"payout_id": attempt.payout_id},
            )
        # Release the read transaction before calling Wave again
        commit_or_rollback("Refresh payout status")

    gateway.cancel_pending_payout(attempt.payout_id)

    attempt.status = PayoutStatus.CANCELLED
    attempt.status_checked_at = now
    commit_or_rollback("Cancel payout")
    current_app.logger.info("Pending payout %s cancelled", attempt.payout_id)
    return attempt
