"""create credits ledger and session schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_tier_override", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_accounts_email"), "accounts", ["email"], unique=True)

    op.create_table(
        "credit_packages",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("bonus_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits", sa.Integer(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="USD"),
        sa.Column("popular", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("savings", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "seq", name="uq_credit_transactions_account_seq"),
    )
    op.create_index(op.f("ix_credit_transactions_account_id"), "credit_transactions", ["account_id"], unique=False)
    op.create_index(
        op.f("ix_credit_transactions_idempotency_key"), "credit_transactions", ["idempotency_key"], unique=True
    )
    op.create_index(op.f("ix_credit_transactions_session_id"), "credit_transactions", ["session_id"], unique=False)
    op.create_index(op.f("ix_credit_transactions_created_at"), "credit_transactions", ["created_at"], unique=False)
    op.create_index("ix_credit_transactions_account_type", "credit_transactions", ["account_id", "type"], unique=False)

    op.create_table(
        "purchase_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("package_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_order_id", sa.String(), nullable=True),
        sa.Column("provider_payment_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["package_id"], ["credit_packages.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_purchase_sessions_account_id"), "purchase_sessions", ["account_id"], unique=False)
    op.create_index(
        op.f("ix_purchase_sessions_provider_order_id"), "purchase_sessions", ["provider_order_id"], unique=True
    )
    op.create_index("ix_purchase_sessions_status_created", "purchase_sessions", ["status", "created_at"], unique=False)

    op.create_table(
        "audit_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("contract_code", sa.Text(), nullable=False),
        sa.Column("contract_language", sa.String(), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("reserved_credits", sa.Integer(), nullable=False),
        sa.Column("credits_charged", sa.Integer(), nullable=True),
        sa.Column("pricing_factors", sa.JSON(), nullable=True),
        sa.Column("engine_session_key", sa.String(), nullable=True),
        sa.Column("settlement_outcome", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_sessions_account_id"), "audit_sessions", ["account_id"], unique=False)
    op.create_index("ix_audit_sessions_status_created", "audit_sessions", ["status", "created_at"], unique=False)

    op.create_table(
        "audit_results",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("raw_response", sa.Text(), nullable=True),
        sa.Column("formatted_report", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["audit_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_results_session_id"), "audit_results", ["session_id"], unique=True)

    op.create_table(
        "enterprise_contacts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("company", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="new"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_enterprise_contacts_account_id"), "enterprise_contacts", ["account_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_enterprise_contacts_account_id"), table_name="enterprise_contacts")
    op.drop_table("enterprise_contacts")
    op.drop_index(op.f("ix_audit_results_session_id"), table_name="audit_results")
    op.drop_table("audit_results")
    op.drop_index("ix_audit_sessions_status_created", table_name="audit_sessions")
    op.drop_index(op.f("ix_audit_sessions_account_id"), table_name="audit_sessions")
    op.drop_table("audit_sessions")
    op.drop_index("ix_purchase_sessions_status_created", table_name="purchase_sessions")
    op.drop_index(op.f("ix_purchase_sessions_provider_order_id"), table_name="purchase_sessions")
    op.drop_index(op.f("ix_purchase_sessions_account_id"), table_name="purchase_sessions")
    op.drop_table("purchase_sessions")
    op.drop_index("ix_credit_transactions_account_type", table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_created_at"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_session_id"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_idempotency_key"), table_name="credit_transactions")
    op.drop_index(op.f("ix_credit_transactions_account_id"), table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_packages")
    op.drop_index(op.f("ix_accounts_email"), table_name="accounts")
    op.drop_table("accounts")
