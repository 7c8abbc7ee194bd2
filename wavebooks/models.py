# wavebooks/models.py
from __future__ import annotations

import enum

import sqlalchemy as sa
from flask_login import UserMixin
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import validates

from .extensions import db
from .utils.clock import utcnow_naive
from .utils.phones import digits_only


# jsonb on Postgres, plain JSON elsewhere (tests run on SQLite).
# none_as_null keeps Python None as SQL NULL so check constraints can see it.
JSONPayload = db.JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

MONEY = db.Numeric(18, 2)
QUANTITY = db.Numeric(14, 3)


def _enum_type(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda enum_cls: [e.value for e in enum_cls],
        native_enum=False,
        validate_strings=True,
    )


# =========================================================
# User (the account that owns every record below)
# =========================================================
class User(UserMixin, db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=False)

    # Per-account Wave key; falls back to WAVE_API_KEY config when empty
    wave_api_key = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    __table_args__ = (
        db.UniqueConstraint("email", name="user_email_key"),
    )

    def __repr__(self) -> str:
        return f"<User {self.id} {self.email}>"


# =========================================================
# Counterparties: Client / Provider
# =========================================================
class _PhoneIndexed:
    """
    Keeps `phone_digits` (digits only) in sync with `phone` so the matcher can
    compare number suffixes in SQL.
    """

    @validates("phone")
    def _sync_phone_digits(self, key, value):
        value = (value or "").strip() or None
        self.phone_digits = digits_only(value) or None
        return value


class Client(_PhoneIndexed, db.Model):
    __tablename__ = "client"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    name = db.Column(db.String(160), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    phone_digits = db.Column(db.String(30), nullable=True, index=True)
    address = db.Column(db.String(255), nullable=True)
    company = db.Column(db.String(160), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    def __repr__(self) -> str:
        return f"<Client {self.id} {self.name}>"


class Provider(_PhoneIndexed, db.Model):
    __tablename__ = "provider"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    name = db.Column(db.String(160), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    phone_digits = db.Column(db.String(30), nullable=True, index=True)
    company = db.Column(db.String(160), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    def __repr__(self) -> str:
        return f"<Provider {self.id} {self.name}>"


class Project(db.Model):
    __tablename__ = "project"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    client_id = db.Column(db.Integer, db.ForeignKey("client.id", ondelete="SET NULL"), nullable=True, index=True)
    client = db.relationship("Client", foreign_keys=[client_id], lazy="joined")

    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    def __repr__(self) -> str:
        return f"<Project {self.id} {self.name}>"


# =========================================================
# Invoice Type / Status (Enum)
# =========================================================
class InvoiceType(enum.Enum):
    PROFORMA = "PROFORMA"
    INVOICE = "INVOICE"


class InvoiceStatus(enum.Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    CONVERTED = "CONVERTED"


# Quotes only move forward; billed invoices freeze once PAID or CANCELLED.
QUOTE_TRANSITIONS = {
    InvoiceStatus.DRAFT: {InvoiceStatus.PENDING, InvoiceStatus.CONVERTED},
    InvoiceStatus.PENDING: {InvoiceStatus.CONVERTED},
    InvoiceStatus.CONVERTED: set(),
}

INVOICE_TRANSITIONS = {
    InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED},
    InvoiceStatus.OVERDUE: {InvoiceStatus.PAID, InvoiceStatus.CANCELLED},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.CANCELLED: set(),
}


def can_transition(invoice: "Invoice", target: InvoiceStatus) -> bool:
    table = QUOTE_TRANSITIONS if invoice.type == InvoiceType.PROFORMA else INVOICE_TRANSITIONS
    return target in table.get(invoice.status, set())


# =========================================================
# Invoice (a quote when type=PROFORMA)
# =========================================================
class Invoice(db.Model):
    __tablename__ = "invoice"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    invoice_number = db.Column(db.String(40), nullable=False)
    type = db.Column(_enum_type(InvoiceType, "invoice_type"), nullable=False, default=InvoiceType.INVOICE)
    status = db.Column(_enum_type(InvoiceStatus, "invoice_status"), nullable=False, default=InvoiceStatus.PENDING)

    amount = db.Column(MONEY, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="XOF")

    due_date = db.Column(db.Date, nullable=True)
    paid_date = db.Column(db.DateTime, nullable=True)

    payment_link = db.Column(db.String(500), nullable=True)
    checkout_session_id = db.Column(db.String(120), nullable=True, index=True)

    notes = db.Column(db.Text, nullable=True)

    # Client snapshot, frozen at creation so historical invoices stay stable
    client_name = db.Column(db.String(160), nullable=True)
    client_email = db.Column(db.String(120), nullable=True)
    client_phone = db.Column(db.String(30), nullable=True)
    client_address = db.Column(db.String(255), nullable=True)

    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="SET NULL"), nullable=True, index=True)
    project = db.relationship("Project", foreign_keys=[project_id], lazy="joined")

    # Back-reference only: many invoices may come from one quote
    source_quote_id = db.Column(db.Integer, db.ForeignKey("invoice.id"), nullable=True, index=True)
    source_quote = db.relationship("Invoice", remote_side=[id], foreign_keys=[source_quote_id], lazy="select")

    # Optimistic concurrency counter; a lost race surfaces as StaleDataError
    version = db.Column(db.Integer, nullable=False, default=1)

    service_lines = db.relationship(
        "ServiceLine",
        back_populates="quote",
        order_by="ServiceLine.position",
        cascade="all, delete-orphan",
        lazy="select",
    )
    items = db.relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="select",
    )

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("user_id", "invoice_number", name="uq_invoice_user_number"),
        db.CheckConstraint("amount >= 0", name="ck_invoice_amount_non_negative"),
        db.Index("ix_invoice_source_quote_status", "source_quote_id", "status"),
    )

    @property
    def is_quote(self) -> bool:
        return self.type == InvoiceType.PROFORMA

    def __repr__(self) -> str:
        return f"<Invoice {self.id} {self.invoice_number} {self.type.value} {self.status.value}>"


class ServiceLine(db.Model):
    __tablename__ = "service_line"

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("invoice.id", ondelete="CASCADE"), nullable=False, index=True)
    quote = db.relationship("Invoice", back_populates="service_lines")

    position = db.Column(db.Integer, nullable=False, default=0)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit_price = db.Column(MONEY, nullable=False)
    # Original quantity; consumption is derived from InvoiceLineItem rows
    quantity = db.Column(QUANTITY, nullable=False)
    unit = db.Column(db.String(30), nullable=True)

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_service_line_quantity_positive"),
        db.CheckConstraint("unit_price >= 0", name="ck_service_line_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<ServiceLine {self.id} {self.name} x{self.quantity}>"


class InvoiceLineItem(db.Model):
    __tablename__ = "invoice_line_item"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice = db.relationship("Invoice", back_populates="items")

    source_service_line_id = db.Column(
        db.Integer, db.ForeignKey("service_line.id"), nullable=True, index=True
    )
    source_service_line = db.relationship("ServiceLine", foreign_keys=[source_service_line_id], lazy="select")

    # Frozen snapshot, never recomputed from the service line
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(30), nullable=True)
    quantity = db.Column(QUANTITY, nullable=False)
    unit_price = db.Column(MONEY, nullable=False)
    total = db.Column(MONEY, nullable=False)

    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
    )


# =========================================================
# Wave transaction assignments
# =========================================================
class AssignmentType(enum.Enum):
    REVENUE = "revenue"
    EXPENSE = "expense"


class AssignmentState(enum.Enum):
    ASSIGNED = "assigned"
    CONFLICT = "conflict"
    RESOLVED = "resolved"


class TransactionAssignment(db.Model):
    __tablename__ = "transaction_assignment"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = db.Column(db.String(120), nullable=False)

    type = db.Column(_enum_type(AssignmentType, "assignment_type"), nullable=False)
    state = db.Column(_enum_type(AssignmentState, "assignment_state"), nullable=False)

    description = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    project_id = db.Column(db.Integer, db.ForeignKey("project.id", ondelete="SET NULL"), nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("client.id", ondelete="SET NULL"), nullable=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("provider.id", ondelete="SET NULL"), nullable=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoice.id", ondelete="SET NULL"), nullable=True)

    project = db.relationship("Project", foreign_keys=[project_id], lazy="joined")
    client = db.relationship("Client", foreign_keys=[client_id], lazy="joined")
    provider = db.relationship("Provider", foreign_keys=[provider_id], lazy="joined")
    invoice = db.relationship("Invoice", foreign_keys=[invoice_id], lazy="select")

    # {"sender_mobile": ..., "clients": [{"id", "name"}], "providers": [...]} while in conflict
    candidates = db.Column(JSONPayload, nullable=True)

    # Snapshot of the gateway transaction at assignment time
    amount = db.Column(MONEY, nullable=False)
    fee = db.Column(MONEY, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="XOF")
    timestamp = db.Column(db.DateTime, nullable=False)
    counterparty_name = db.Column(db.String(160), nullable=True)
    counterparty_mobile = db.Column(db.String(30), nullable=True)
    is_reversal = db.Column(db.Boolean, nullable=False, default=False)
    transaction_data = db.Column(JSONPayload, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    __table_args__ = (
        db.UniqueConstraint("user_id", "transaction_id", name="uq_assignment_user_transaction"),
        # A conflict has candidates and no concrete counterparty; nothing else has candidates.
        db.CheckConstraint(
            "(state = 'conflict' AND candidates IS NOT NULL AND client_id IS NULL AND provider_id IS NULL)"
            " OR (state <> 'conflict' AND candidates IS NULL)",
            name="ck_assignment_conflict_shape",
        ),
    )

    def __repr__(self) -> str:
        return f"<TransactionAssignment {self.id} {self.transaction_id} {self.state.value}>"


# =========================================================
# Payouts (outbound send-money commands)
# =========================================================
class PayoutStatus(enum.Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REVERSED = "reversed"
    CANCELLED = "cancelled"


PAYOUT_TERMINAL_STATUSES = {
    PayoutStatus.SUCCEEDED,
    PayoutStatus.FAILED,
    PayoutStatus.REVERSED,
    PayoutStatus.CANCELLED,
}


class PayoutAttempt(db.Model):
    __tablename__ = "payout_attempt"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    payout_id = db.Column(db.String(120), nullable=True, unique=True)
    # Ledger transaction produced by the payout, once the gateway reports it
    transaction_id = db.Column(db.String(120), nullable=True, index=True)

    amount = db.Column(MONEY, nullable=False)
    fee = db.Column(MONEY, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="XOF")
    mobile = db.Column(db.String(30), nullable=False)
    recipient_name = db.Column(db.String(160), nullable=True)
    reason = db.Column(db.String(40), nullable=True)
    client_reference = db.Column(db.String(255), nullable=True)
    idempotency_key = db.Column(db.String(64), nullable=False)

    status = db.Column(_enum_type(PayoutStatus, "payout_status"), nullable=False, default=PayoutStatus.PROCESSING)
    last_error_code = db.Column(db.String(80), nullable=True)

    provider_id = db.Column(db.Integer, db.ForeignKey("provider.id", ondelete="SET NULL"), nullable=True, index=True)
    provider = db.relationship("Provider", foreign_keys=[provider_id], lazy="joined")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)
    status_checked_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive, onupdate=utcnow_naive)

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
        db.UniqueConstraint("user_id", "idempotency_key", name="uq_payout_user_idempotency"),
    )

    def __repr__(self) -> str:
        return f"<PayoutAttempt {self.id} {self.payout_id} {self.status.value}>"


# =========================================================
# Compensating movements (refunds / reversals of a transaction)
# =========================================================
class CompensationKind(enum.Enum):
    REFUND = "refund"
    REVERSAL = "reversal"


class CompensatingMovement(db.Model):
    __tablename__ = "compensating_movement"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    original_transaction_id = db.Column(db.String(120), nullable=False)
    kind = db.Column(_enum_type(CompensationKind, "compensation_kind"), nullable=False)

    # Refund transaction id or reversed payout id, as reported by the gateway
    gateway_reference = db.Column(db.String(120), nullable=True)

    amount = db.Column(MONEY, nullable=False)
    fee = db.Column(MONEY, nullable=False, default=0)
    currency = db.Column(db.String(10), nullable=False, default="XOF")

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow_naive)

    __table_args__ = (
        # One compensation per original transaction: a second refund is impossible
        db.UniqueConstraint("user_id", "original_transaction_id", name="uq_compensation_user_original"),
    )

    def __repr__(self) -> str:
        return f"<CompensatingMovement {self.kind.value} of {self.original_transaction_id}>"
