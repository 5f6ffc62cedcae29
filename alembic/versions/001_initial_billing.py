"""Tenant hierarchy, payment schedule items, billing transactions and event history

Revision ID: 001_initial_billing
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial_billing"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_TRANSACTION = sa.text("status NOT IN ('cancelled', 'refunded')")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # Accounts
    op.create_table(
        "accounts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    # Agencies
    op.create_table(
        "agencies",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("parent_agency_id", sa.BigInteger(), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("agency_type", sa.String(20), nullable=False, server_default="main"),
        sa.Column("commission_split_percent", sa.Numeric(5, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["parent_agency_id"], ["agencies.id"]),
    )
    op.create_index("ix_agencies_account_id", "agencies", ["account_id"])
    op.create_index("ix_agencies_parent_agency_id", "agencies", ["parent_agency_id"])

    # Offer letters
    op.create_table(
        "offer_letters",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("agency_id", sa.BigInteger(), nullable=False),
        sa.Column("student_id", sa.BigInteger(), nullable=False),
        sa.Column("reference", sa.String(100), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="issued"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
    )
    op.create_index("ix_offer_letters_account_id", "offer_letters", ["account_id"])
    op.create_index("ix_offer_letters_agency_id", "offer_letters", ["agency_id"])
    op.create_index("ix_offer_letters_student_id", "offer_letters", ["student_id"])

    # Audit log
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=True),
        sa.Column("agency_id", sa.BigInteger(), nullable=True),
        sa.Column("actor_id", sa.BigInteger(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(100), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index(
        "ix_audit_entity_created", "audit_logs", ["entity_type", "entity_id", "created_at"]
    )
    op.create_index(
        "ix_audit_scope_created", "audit_logs", ["account_id", "agency_id", "created_at"]
    )

    # Payment schedule items
    op.create_table(
        "payment_schedule_items",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("agency_id", sa.BigInteger(), nullable=False),
        sa.Column("offer_letter_id", sa.BigInteger(), nullable=False),
        sa.Column("item_type", sa.String(20), nullable=False),
        sa.Column("milestone_type", sa.String(30), nullable=False),
        sa.Column("scheduled_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("scheduled_due_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("recurring_frequency", sa.String(20), nullable=True),
        sa.Column("recurring_end_date", sa.Date(), nullable=True),
        sa.Column("recurring_occurrences", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("parent_item_id", sa.BigInteger(), nullable=True),
        sa.Column("replaced_by_id", sa.BigInteger(), nullable=True),
        sa.Column("replacement_reason", sa.String(30), nullable=True),
        sa.Column("recurrence_index", sa.Integer(), nullable=True),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retired_by_id", sa.BigInteger(), nullable=True),
        sa.Column("retirement_reason", sa.String(500), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by_id", sa.BigInteger(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by_id", sa.BigInteger(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.BigInteger(), nullable=False),
        sa.Column("updated_by_id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["offer_letter_id"], ["offer_letters.id"]),
        sa.ForeignKeyConstraint(["parent_item_id"], ["payment_schedule_items.id"]),
        sa.ForeignKeyConstraint(["replaced_by_id"], ["payment_schedule_items.id"]),
    )
    op.create_index(
        "ix_payment_schedule_items_account_id", "payment_schedule_items", ["account_id"]
    )
    op.create_index(
        "ix_payment_schedule_items_agency_id", "payment_schedule_items", ["agency_id"]
    )
    op.create_index(
        "ix_payment_schedule_items_offer_letter_id", "payment_schedule_items", ["offer_letter_id"]
    )
    op.create_index("ix_payment_schedule_items_status", "payment_schedule_items", ["status"])
    op.create_index(
        "ix_payment_schedule_items_parent_item_id", "payment_schedule_items", ["parent_item_id"]
    )
    op.create_index(
        "ix_psi_scope_due",
        "payment_schedule_items",
        ["account_id", "agency_id", "scheduled_due_date"],
    )
    op.create_index(
        "ix_psi_scope_offer",
        "payment_schedule_items",
        ["account_id", "agency_id", "offer_letter_id"],
    )
    op.create_index(
        "ix_psi_due_status", "payment_schedule_items", ["scheduled_due_date", "status"]
    )

    # Billing transactions
    op.create_table(
        "billing_transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("agency_id", sa.BigInteger(), nullable=False),
        sa.Column("payment_schedule_item_id", sa.BigInteger(), nullable=False),
        sa.Column("debtor_type", sa.String(20), nullable=False),
        sa.Column("debtor_id", sa.BigInteger(), nullable=False),
        sa.Column("signed_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("claimed_date", sa.Date(), nullable=True),
        sa.Column("paid_date", sa.Date(), nullable=True),
        sa.Column("payment_method", sa.String(20), nullable=True),
        sa.Column("invoice_ref", sa.String(100), nullable=True),
        sa.Column("credit_note_ref", sa.String(100), nullable=True),
        sa.Column("receipt_ref", sa.String(100), nullable=True),
        sa.Column("external_ref", sa.String(100), nullable=True),
        sa.Column("processing_fee", sa.Numeric(15, 2), nullable=True),
        sa.Column("late_fee", sa.Numeric(15, 2), nullable=True),
        sa.Column("conversion_fee", sa.Numeric(15, 2), nullable=True),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reconciled_by_id", sa.BigInteger(), nullable=True),
        sa.Column("bank_statement_ref", sa.String(100), nullable=True),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("dispute_date", sa.Date(), nullable=True),
        sa.Column("dispute_resolved_date", sa.Date(), nullable=True),
        sa.Column("dispute_resolved_by_id", sa.BigInteger(), nullable=True),
        sa.Column("source", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.BigInteger(), nullable=False),
        sa.Column("updated_by_id", sa.BigInteger(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["payment_schedule_item_id"], ["payment_schedule_items.id"]),
    )
    op.create_index("ix_billing_transactions_account_id", "billing_transactions", ["account_id"])
    op.create_index("ix_billing_transactions_agency_id", "billing_transactions", ["agency_id"])
    op.create_index(
        "ix_billing_transactions_payment_schedule_item_id",
        "billing_transactions",
        ["payment_schedule_item_id"],
    )
    op.create_index("ix_billing_transactions_status", "billing_transactions", ["status"])
    op.create_index("ix_billing_transactions_invoice_ref", "billing_transactions", ["invoice_ref"])
    op.create_index(
        "ix_bt_scope_status", "billing_transactions", ["account_id", "agency_id", "status"]
    )
    op.create_index(
        "ix_bt_scope_debtor",
        "billing_transactions",
        ["account_id", "agency_id", "debtor_type", "debtor_id"],
    )
    op.create_index("ix_bt_due_status", "billing_transactions", ["due_date", "status"])
    # At most one live transaction per schedule item
    op.create_index(
        "uq_bt_live_item",
        "billing_transactions",
        ["payment_schedule_item_id"],
        unique=True,
        postgresql_where=LIVE_TRANSACTION,
        sqlite_where=LIVE_TRANSACTION,
    )

    # Approval stamps
    op.create_table(
        "billing_transaction_approvals",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("billing_transaction_id", sa.BigInteger(), nullable=False),
        sa.Column("approved_by_id", sa.BigInteger(), nullable=False),
        sa.Column("level", sa.String(20), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column(
            "approved_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["billing_transaction_id"], ["billing_transactions.id"]),
        sa.UniqueConstraint(
            "billing_transaction_id",
            "approved_by_id",
            "level",
            name="uq_bt_approval_actor_level",
        ),
    )
    op.create_index(
        "ix_billing_transaction_approvals_billing_transaction_id",
        "billing_transaction_approvals",
        ["billing_transaction_id"],
    )

    # Billing event history (insert-only)
    op.create_table(
        "billing_event_histories",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("account_id", sa.BigInteger(), nullable=False),
        sa.Column("agency_id", sa.BigInteger(), nullable=False),
        sa.Column("billing_transaction_id", sa.BigInteger(), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("event_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("triggered_by_id", sa.BigInteger(), nullable=False),
        sa.Column("source", sa.String(20), nullable=False, server_default="web"),
        sa.Column("is_visible", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("hidden_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hidden_by_id", sa.BigInteger(), nullable=True),
        sa.Column("email_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("sms_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("push_sent", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_recipients", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["agency_id"], ["agencies.id"]),
        sa.ForeignKeyConstraint(["billing_transaction_id"], ["billing_transactions.id"]),
    )
    op.create_index(
        "ix_billing_event_histories_account_id", "billing_event_histories", ["account_id"]
    )
    op.create_index(
        "ix_billing_event_histories_agency_id", "billing_event_histories", ["agency_id"]
    )
    op.create_index(
        "ix_billing_event_histories_billing_transaction_id",
        "billing_event_histories",
        ["billing_transaction_id"],
    )
    op.create_index(
        "ix_billing_event_histories_event_type", "billing_event_histories", ["event_type"]
    )
    op.create_index(
        "ix_beh_scope_type", "billing_event_histories", ["account_id", "agency_id", "event_type"]
    )
    op.create_index(
        "ix_beh_txn_date", "billing_event_histories", ["billing_transaction_id", "event_date"]
    )
    op.create_index(
        "ix_beh_scope_date", "billing_event_histories", ["account_id", "agency_id", "event_date"]
    )
    op.create_index(
        "ix_beh_actor_date", "billing_event_histories", ["triggered_by_id", "event_date"]
    )


def downgrade() -> None:
    op.drop_table("billing_event_histories")
    op.drop_table("billing_transaction_approvals")
    op.drop_index("uq_bt_live_item", table_name="billing_transactions")
    op.drop_table("billing_transactions")
    op.drop_table("payment_schedule_items")
    op.drop_table("audit_logs")
    op.drop_table("offer_letters")
    op.drop_table("agencies")
    op.drop_table("accounts")
