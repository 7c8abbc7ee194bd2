# wavebooks/services/assignments.py
"""
Linking Wave transactions to the account's own records.

An assignment row exists per (account, transaction). When several clients
or providers share the counterparty's phone number and the caller did not
pick one, the row is stored in CONFLICT with the candidates attached; it
leaves that state only through resolve_conflict().
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from wavebooks.extensions import db
from wavebooks.models import (
    AssignmentState,
    AssignmentType,
    Client,
    Invoice,
    InvoiceStatus,
    Project,
    Provider,
    TransactionAssignment,
)
from wavebooks.services.db_helpers import commit_or_rollback, get_owned
from wavebooks.services.errors import (
    AssignmentNotInConflictError,
    CandidateNotOfferedError,
    ConsistencyError,
    MalformedPhoneError,
    NotFoundError,
    StateError,
    ValidationError,
)
from wavebooks.services.matching import MatchResult, match
from wavebooks.services.states import AssignmentView, state_of
from wavebooks.services.wave_client import ExternalTransaction


PAYABLE_STATUSES = {InvoiceStatus.PENDING, InvoiceStatus.OVERDUE}


@dataclass(frozen=True)
class AssignmentLinks:
    project_id: Optional[int] = None
    client_id: Optional[int] = None
    provider_id: Optional[int] = None
    invoice_id: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "AssignmentLinks":
        def _id(key):
            value = data.get(key)
            if value in (None, ""):
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"{key} must be an integer.", details={"field": key})

        return cls(
            project_id=_id("project_id"),
            client_id=_id("client_id"),
            provider_id=_id("provider_id"),
            invoice_id=_id("invoice_id"),
        )

    @property
    def names_counterparty(self) -> bool:
        return any(v is not None for v in (self.client_id, self.provider_id, self.invoice_id))


@dataclass
class AssignmentResult:
    assignment: TransactionAssignment
    state: AssignmentView
    match: Optional[MatchResult] = None
    warnings: list[dict] = field(default_factory=list)


def _parse_type(value) -> AssignmentType:
    if isinstance(value, AssignmentType):
        return value
    try:
        return AssignmentType((value or "").strip().lower())
    except ValueError:
        raise ValidationError("type must be 'revenue' or 'expense'.", details={"field": "type", "value": value})


def _find(user_id: int, transaction_id: str, *, lock: bool = False) -> Optional[TransactionAssignment]:
    q = db.select(TransactionAssignment).where(
        TransactionAssignment.user_id == user_id,
        TransactionAssignment.transaction_id == transaction_id,
    )
    if lock:
        q = q.with_for_update(of=TransactionAssignment)
    return db.session.execute(q).unique().scalar_one_or_none()


def get_assignment(user_id: int, transaction_id: str) -> Optional[TransactionAssignment]:
    return _find(user_id, transaction_id)


def assignments_for(user_id: int, transaction_ids: list[str]) -> dict[str, TransactionAssignment]:
    if not transaction_ids:
        return {}
    rows = TransactionAssignment.query.filter(
        TransactionAssignment.user_id == user_id,
        TransactionAssignment.transaction_id.in_(transaction_ids),
    ).all()
    return {row.transaction_id: row for row in rows}


def _check_invoice(
    user_id: int,
    transaction: ExternalTransaction,
    assignment_type: AssignmentType,
    invoice_id: int,
    existing: Optional[TransactionAssignment],
) -> Invoice:
    if assignment_type != AssignmentType.REVENUE:
        raise ValidationError(
            "Only revenue can settle an invoice.", code="invoice-requires-revenue", details={"invoice_id": invoice_id}
        )

    invoice = get_owned(Invoice, user_id, invoice_id, lock=True)
    if invoice.is_quote:
        raise ValidationError("A quote cannot be paid directly.", code="not-an-invoice")

    already_settled_here = (
        invoice.status == InvoiceStatus.PAID
        and existing is not None
        and existing.invoice_id == invoice.id
    )
    if invoice.status not in PAYABLE_STATUSES and not already_settled_here:
        raise StateError(
            f"Invoice {invoice.invoice_number} is {invoice.status.value} and cannot be paid.",
            code="invoice-not-payable",
            details={"invoice_id": invoice.id, "status": invoice.status.value},
        )
    return invoice


def _amount_warning(transaction: ExternalTransaction, invoice: Invoice) -> Optional[dict]:
    tolerance = Decimal(str(current_app.config.get("AMOUNT_MATCH_TOLERANCE", 0.10)))
    received = abs(transaction.amount)
    expected = Decimal(invoice.amount)
    if abs(received - expected) <= tolerance * expected:
        return None

    current_app.logger.warning(
        "Amount mismatch: transaction %s (%s) vs invoice %s (%s)",
        transaction.id, received, invoice.invoice_number, expected,
    )
    return {
        "code": "amount-mismatch",
        "message": (
            f"Transaction amount {received} differs from invoice {invoice.invoice_number} "
            f"amount {expected} by more than {tolerance * 100:.0f}%."
        ),
        "transaction_amount": str(received),
        "invoice_amount": str(expected),
    }


def _settle_invoice(invoice: Invoice, transaction: ExternalTransaction) -> None:
    if invoice.status == InvoiceStatus.PAID:
        return
    invoice.status = InvoiceStatus.PAID
    invoice.paid_date = transaction.timestamp
    note = f"Paid via Wave - Transaction {transaction.id}"
    invoice.notes = f"{invoice.notes}\n{note}" if invoice.notes else note


def _snapshot(row: TransactionAssignment, transaction: ExternalTransaction) -> None:
    row.amount = transaction.amount
    row.fee = transaction.fee
    row.currency = transaction.currency
    row.timestamp = transaction.timestamp
    row.counterparty_name = transaction.counterparty_name
    row.counterparty_mobile = transaction.counterparty_mobile
    row.is_reversal = transaction.is_reversal
    row.transaction_data = transaction.to_payload()


def transaction_from_assignment(row: TransactionAssignment) -> ExternalTransaction:
    """Rebuild the gateway fact from the snapshot stored on the assignment."""
    data = dict(row.transaction_data or {})
    data.update({
        "transaction_id": row.transaction_id,
        "amount": str(row.amount),
        "fee": str(row.fee),
        "currency": row.currency,
        "timestamp": row.timestamp,
        "counterparty_name": row.counterparty_name,
        "counterparty_mobile": row.counterparty_mobile,
        "is_reversal": row.is_reversal,
    })
    return ExternalTransaction.from_payload(data)


# =========================================================
# Operations
# =========================================================
def assign(
    user_id: int,
    transaction: ExternalTransaction,
    assignment_type,
    description: str,
    links: Optional[AssignmentLinks] = None,
    notes: Optional[str] = None,
) -> AssignmentResult:
    """
    Create or overwrite the assignment for `transaction`.

    Without an explicit client/provider/invoice, more than one phone match
    puts the assignment in CONFLICT; a single match is only suggested.
    """
    assignment_type = _parse_type(assignment_type)
    links = links or AssignmentLinks()
    description = (description or "").strip()
    if not description:
        raise ValidationError("description is required.", details={"field": "description"})

    warnings: list[dict] = []

    # Links must point at this account's records
    if links.project_id is not None:
        get_owned(Project, user_id, links.project_id)
    if links.client_id is not None:
        get_owned(Client, user_id, links.client_id)
    if links.provider_id is not None:
        get_owned(Provider, user_id, links.provider_id)

    match_result = None
    if not links.names_counterparty:
        try:
            match_result = match(user_id, transaction)
        except MalformedPhoneError as exc:
            warnings.append({"code": exc.code, "message": exc.message})

    in_conflict = match_result is not None and match_result.is_conflict

    for attempt in range(2):
        row = _find(user_id, transaction.id, lock=True)
        invoice = None
        if links.invoice_id is not None:
            invoice = _check_invoice(user_id, transaction, assignment_type, links.invoice_id, row)

        if row is None:
            row = TransactionAssignment(user_id=user_id, transaction_id=transaction.id)
            db.session.add(row)

        row.type = assignment_type
        row.description = description
        row.notes = notes
        row.project_id = links.project_id
        row.invoice_id = links.invoice_id
        _snapshot(row, transaction)

        if in_conflict:
            row.state = AssignmentState.CONFLICT
            row.candidates = match_result.candidates_payload()
            row.client_id = None
            row.provider_id = None
        else:
            row.state = AssignmentState.ASSIGNED
            row.candidates = None
            row.client_id = links.client_id
            row.provider_id = links.provider_id

        if invoice is not None:
            mismatch = _amount_warning(transaction, invoice)
            if mismatch:
                warnings.append(mismatch)
            _settle_invoice(invoice, transaction)

        try:
            db.session.commit()
            break
        except IntegrityError:
            # Someone inserted the same transaction first; retry as an overwrite
            db.session.rollback()
            warnings = [w for w in warnings if w["code"] != "amount-mismatch"]
            if attempt == 0:
                continue
            raise ConsistencyError("The assignment changed concurrently. Please try again.")
        except StaleDataError:
            db.session.rollback()
            raise ConsistencyError("The invoice changed concurrently. Please try again.")

    current_app.logger.info(
        "Transaction %s assigned as %s (%s)", transaction.id, assignment_type.value, row.state.value
    )
    return AssignmentResult(
        assignment=row,
        state=state_of(transaction.id, row),
        match=match_result,
        warnings=warnings,
    )


def resolve_conflict(
    user_id: int,
    assignment_id: int,
    *,
    client_id: Optional[int] = None,
    provider_id: Optional[int] = None,
) -> TransactionAssignment:
    """Settle a CONFLICT on exactly one of the candidates it was offered."""
    if (client_id is None) == (provider_id is None):
        raise ValidationError(
            "Choose exactly one client or one provider.", code="exactly-one-counterparty"
        )

    row = get_owned(TransactionAssignment, user_id, assignment_id, lock=True)
    if row.state != AssignmentState.CONFLICT:
        raise AssignmentNotInConflictError(
            "This assignment is not in conflict.", details={"state": row.state.value}
        )

    candidates = row.candidates or {}
    kind, chosen_id = ("clients", client_id) if client_id is not None else ("providers", provider_id)
    offered = {c.get("id") for c in candidates.get(kind) or []}
    if chosen_id not in offered:
        raise CandidateNotOfferedError(
            "The selected counterparty was not one of the conflict candidates.",
            details={kind: sorted(offered), "selected": chosen_id},
        )

    if client_id is not None:
        chosen = get_owned(Client, user_id, client_id)
        row.client_id = chosen.id
        row.provider_id = None
    else:
        chosen = get_owned(Provider, user_id, provider_id)
        row.provider_id = chosen.id
        row.client_id = None

    row.state = AssignmentState.RESOLVED
    row.candidates = None
    row.counterparty_name = chosen.name

    commit_or_rollback("Resolve conflict")
    current_app.logger.info("Conflict on transaction %s resolved to %s %s", row.transaction_id, kind, chosen.id)
    return row


def unassign(user_id: int, transaction_id: str) -> bool:
    """Delete the assignment. Invoices it settled keep their status."""
    row = _find(user_id, transaction_id, lock=True)
    if row is None:
        return False
    db.session.delete(row)
    commit_or_rollback("Unassign transaction")
    current_app.logger.info("Transaction %s unassigned", transaction_id)
    return True


def list_conflicts(user_id: int) -> list[TransactionAssignment]:
    return (
        TransactionAssignment.query.filter_by(user_id=user_id, state=AssignmentState.CONFLICT)
        .order_by(TransactionAssignment.timestamp.desc())
        .all()
    )


def conflict_detail(user_id: int, assignment_id: int) -> dict:
    """The conflict plus fresh data for each candidate, for the resolution screen."""
    row = get_owned(TransactionAssignment, user_id, assignment_id)
    if row.state != AssignmentState.CONFLICT:
        raise AssignmentNotInConflictError(
            "This assignment is not in conflict.", details={"state": row.state.value}
        )

    candidates = row.candidates or {}
    client_ids = [c.get("id") for c in candidates.get("clients") or []]
    provider_ids = [p.get("id") for p in candidates.get("providers") or []]

    clients = Client.query.filter(Client.user_id == user_id, Client.id.in_(client_ids)).all() if client_ids else []
    providers = (
        Provider.query.filter(Provider.user_id == user_id, Provider.id.in_(provider_ids)).all()
        if provider_ids else []
    )

    return {
        "assignment": row,
        "sender_mobile": candidates.get("sender_mobile"),
        "clients": clients,
        "providers": providers,
    }


def record_expense(
    user_id: int,
    transaction: ExternalTransaction,
    description: str,
    *,
    project_id: Optional[int] = None,
    client_id: Optional[int] = None,
    provider_id: Optional[int] = None,
) -> TransactionAssignment:
    """
    Add (without committing) an expense assignment for a movement this
    engine initiated itself, such as a refund.
    """
    row = _find(user_id, transaction.id)
    if row is None:
        row = TransactionAssignment(user_id=user_id, transaction_id=transaction.id)
        db.session.add(row)
    row.type = AssignmentType.EXPENSE
    row.state = AssignmentState.ASSIGNED
    row.candidates = None
    row.description = description
    row.project_id = project_id
    row.client_id = client_id
    row.provider_id = provider_id
    row.invoice_id = None
    _snapshot(row, transaction)
    return row


def require_assignment(user_id: int, transaction_id: str) -> TransactionAssignment:
    row = _find(user_id, transaction_id)
    if row is None:
        raise NotFoundError(
            "Transaction not found or not assigned.", code="transaction-not-assigned",
            details={"transaction_id": transaction_id},
        )
    return row
