"""Initial schema: ledger entries, webhook events, payout batches, notifications, destinations

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payout_batches",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("reference", sa.String(64), nullable=False),
        sa.Column("seller_id", sa.String(255), nullable=False),
        sa.Column("entry_ids", postgresql.JSONB, nullable=False),
        sa.Column("total_amount", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="created"),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("transfer_ref", sa.String(255), nullable=True),
        sa.Column("held", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("total_amount >= 0", name="ck_payout_batches_total_amount"),
    )
    op.create_index("ix_payout_batches_reference", "payout_batches", ["reference"], unique=True)
    op.create_index("ix_payout_batches_status_updated_at", "payout_batches", ["status", "updated_at"])
    op.create_index("ix_payout_batches_transfer_ref", "payout_batches", ["transfer_ref"])
    op.create_index(
        "ix_payout_batches_held",
        "payout_batches",
        ["created_at"],
        postgresql_where=sa.text("held"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("order_id", sa.String(255), nullable=False),
        sa.Column("seller_id", sa.String(255), nullable=False),
        sa.Column("gross_amount", sa.BigInteger, nullable=False),
        sa.Column("commission_amount", sa.BigInteger, nullable=False),
        sa.Column("net_amount", sa.BigInteger, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("escrow_release_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("charge_reference", sa.String(255), nullable=True),
        sa.Column("payout_batch_id", sa.String(26), sa.ForeignKey("payout_batches.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("gross_amount >= 0", name="ck_ledger_entries_gross_amount"),
        sa.CheckConstraint(
            "commission_amount + net_amount = gross_amount",
            name="ck_ledger_entries_split",
        ),
    )
    op.create_index("ix_ledger_entries_order_id", "ledger_entries", ["order_id"], unique=True)
    op.create_index(
        "ix_ledger_entries_seller_state_release",
        "ledger_entries",
        ["seller_id", "state", "escrow_release_at"],
    )
    op.create_index(
        "ix_ledger_entries_releasable",
        "ledger_entries",
        ["escrow_release_at"],
        postgresql_where=sa.text("state = 'escrowed'"),
    )
    op.create_index(
        "ix_ledger_entries_batching",
        "ledger_entries",
        ["updated_at"],
        postgresql_where=sa.text("state = 'batching'"),
    )
    op.create_index("ix_ledger_entries_payout_batch_id", "ledger_entries", ["payout_batch_id"])

    op.create_table(
        "webhook_events",
        sa.Column("external_event_id", sa.String(255), primary_key=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])

    op.create_table(
        "seller_notifications",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("seller_id", sa.String(255), nullable=False),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(100), nullable=False),
        sa.Column("message", sa.String(500), nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=False),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_seller_notifications_inbox",
        "seller_notifications",
        ["seller_id", "read", sa.text("created_at DESC")],
    )
    op.create_index("ix_seller_notifications_expires_at", "seller_notifications", ["expires_at"])

    op.create_table(
        "payout_destinations",
        sa.Column("seller_id", sa.String(255), primary_key=True),
        sa.Column("recipient_code", sa.String(255), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("payout_destinations")
    op.drop_table("seller_notifications")
    op.drop_table("webhook_events")
    op.drop_table("ledger_entries")
    op.drop_table("payout_batches")
