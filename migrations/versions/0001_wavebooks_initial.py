"""wavebooks initial schema: accounts, quotes/invoices, wave reconciliation

Revision ID: 0001_wavebooks_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_wavebooks_initial"
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")


def upgrade():
    # =========================
    # user
    # =========================
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=False),
        sa.Column("wave_api_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("email", name="user_email_key"),
    )

    # =========================
    # client / provider
    # =========================
    op.create_table(
        "client",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column("phone_digits", sa.String(length=30), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("company", sa.String(length=160), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_client_user", ondelete="CASCADE"),
    )
    op.create_index("ix_client_user_id", "client", ["user_id"])
    op.create_index("ix_client_phone_digits", "client", ["phone_digits"])

    op.create_table(
        "provider",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("email", sa.String(length=120), nullable=True),
        sa.Column("phone", sa.String(length=30), nullable=True),
        sa.Column("phone_digits", sa.String(length=30), nullable=True),
        sa.Column("company", sa.String(length=160), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_provider_user", ondelete="CASCADE"),
    )
    op.create_index("ix_provider_user_id", "provider", ["user_id"])
    op.create_index("ix_provider_phone_digits", "provider", ["phone_digits"])

    # =========================
    # project
    # =========================
    op.create_table(
        "project",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_project_user", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["client_id"], ["client.id"], name="fk_project_client", ondelete="SET NULL"),
    )
    op.create_index("ix_project_user_id", "project", ["user_id"])
    op.create_index("ix_project_client_id", "project", ["client_id"])

    # =========================
    # invoice (quotes are type=PROFORMA)
    # =========================
    op.create_table(
        "invoice",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(length=40), nullable=False),
        sa.Column("type", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="XOF"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_date", sa.DateTime(), nullable=True),
        sa.Column("payment_link", sa.String(length=500), nullable=True),
        sa.Column("checkout_session_id", sa.String(length=120), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("client_name", sa.String(length=160), nullable=True),
        sa.Column("client_email", sa.String(length=120), nullable=True),
        sa.Column("client_phone", sa.String(length=30), nullable=True),
        sa.Column("client_address", sa.String(length=255), nullable=True),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("source_quote_id", sa.Integer(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_invoice_user", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], name="fk_invoice_project", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["source_quote_id"], ["invoice.id"], name="fk_invoice_source_quote"),
        sa.UniqueConstraint("user_id", "invoice_number", name="uq_invoice_user_number"),
        sa.CheckConstraint("amount >= 0", name="ck_invoice_amount_non_negative"),
        sa.CheckConstraint("type IN ('PROFORMA','INVOICE')", name="ck_invoice_type_allowed"),
        sa.CheckConstraint(
            "status IN ('DRAFT','PENDING','PAID','OVERDUE','CANCELLED','CONVERTED')",
            name="ck_invoice_status_allowed",
        ),
    )
    op.create_index("ix_invoice_user_id", "invoice", ["user_id"])
    op.create_index("ix_invoice_project_id", "invoice", ["project_id"])
    op.create_index("ix_invoice_source_quote_id", "invoice", ["source_quote_id"])
    op.create_index("ix_invoice_checkout_session_id", "invoice", ["checkout_session_id"])
    op.create_index("ix_invoice_source_quote_status", "invoice", ["source_quote_id", "status"])

    # =========================
    # service_line (owned by a quote)
    # =========================
    op.create_table(
        "service_line",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("quote_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit", sa.String(length=30), nullable=True),
        sa.ForeignKeyConstraint(["quote_id"], ["invoice.id"], name="fk_service_line_quote", ondelete="CASCADE"),
        sa.CheckConstraint("quantity > 0", name="ck_service_line_quantity_positive"),
        sa.CheckConstraint("unit_price >= 0", name="ck_service_line_price_non_negative"),
    )
    op.create_index("ix_service_line_quote_id", "service_line", ["quote_id"])

    # =========================
    # invoice_line_item
    # =========================
    op.create_table(
        "invoice_line_item",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("source_service_line_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit", sa.String(length=30), nullable=True),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("total", sa.Numeric(18, 2), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoice.id"], name="fk_line_item_invoice", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["source_service_line_id"], ["service_line.id"], name="fk_line_item_service_line"
        ),
        sa.CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
    )
    op.create_index("ix_invoice_line_item_invoice_id", "invoice_line_item", ["invoice_id"])
    op.create_index(
        "ix_invoice_line_item_source_service_line_id", "invoice_line_item", ["source_service_line_id"]
    )

    # =========================
    # transaction_assignment
    # =========================
    op.create_table(
        "transaction_assignment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.String(length=120), nullable=False),
        sa.Column("type", sa.String(length=7), nullable=False),
        sa.Column("state", sa.String(length=8), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("provider_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        sa.Column("candidates", _json(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="XOF"),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("counterparty_name", sa.String(length=160), nullable=True),
        sa.Column("counterparty_mobile", sa.String(length=30), nullable=True),
        sa.Column("is_reversal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("transaction_data", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_assignment_user", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], name="fk_assignment_project", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["client_id"], ["client.id"], name="fk_assignment_client", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["provider_id"], ["provider.id"], name="fk_assignment_provider", ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoice.id"], name="fk_assignment_invoice", ondelete="SET NULL"),
        sa.UniqueConstraint("user_id", "transaction_id", name="uq_assignment_user_transaction"),
        sa.CheckConstraint(
            "(state = 'conflict' AND candidates IS NOT NULL AND client_id IS NULL AND provider_id IS NULL)"
            " OR (state <> 'conflict' AND candidates IS NULL)",
            name="ck_assignment_conflict_shape",
        ),
    )
    op.create_index("ix_transaction_assignment_user_id", "transaction_assignment", ["user_id"])

    # =========================
    # payout_attempt
    # =========================
    op.create_table(
        "payout_attempt",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("payout_id", sa.String(length=120), nullable=True),
        sa.Column("transaction_id", sa.String(length=120), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="XOF"),
        sa.Column("mobile", sa.String(length=30), nullable=False),
        sa.Column("recipient_name", sa.String(length=160), nullable=True),
        sa.Column("reason", sa.String(length=40), nullable=True),
        sa.Column("client_reference", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=10), nullable=False, server_default="processing"),
        sa.Column("last_error_code", sa.String(length=80), nullable=True),
        sa.Column("provider_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("status_checked_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_payout_user", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["provider_id"], ["provider.id"], name="fk_payout_provider", ondelete="SET NULL"),
        sa.UniqueConstraint("payout_id", name="uq_payout_attempt_payout_id"),
        sa.CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_payout_user_idempotency"),
    )
    op.create_index("ix_payout_attempt_user_id", "payout_attempt", ["user_id"])
    op.create_index("ix_payout_attempt_transaction_id", "payout_attempt", ["transaction_id"])
    op.create_index("ix_payout_attempt_provider_id", "payout_attempt", ["provider_id"])

    # =========================
    # compensating_movement (refunds / reversals)
    # =========================
    op.create_table(
        "compensating_movement",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("original_transaction_id", sa.String(length=120), nullable=False),
        sa.Column("kind", sa.String(length=8), nullable=False),
        sa.Column("gateway_reference", sa.String(length=120), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("fee", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=10), nullable=False, server_default="XOF"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], name="fk_compensation_user", ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "original_transaction_id", name="uq_compensation_user_original"),
    )
    op.create_index("ix_compensating_movement_user_id", "compensating_movement", ["user_id"])


def downgrade():
    op.drop_table("compensating_movement")
    op.drop_table("payout_attempt")
    op.drop_table("transaction_assignment")
    op.drop_table("invoice_line_item")
    op.drop_table("service_line")
    op.drop_table("invoice")
    op.drop_table("project")
    op.drop_table("provider")
    op.drop_table("client")
    op.drop_table("user")
