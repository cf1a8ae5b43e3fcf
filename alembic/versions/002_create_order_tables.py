"""Create order reference tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- ORDERS ---
    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(64), primary_key=True),
        sa.Column("payment_reference", sa.String(256), nullable=False),
        sa.Column("buyer_address", sa.String(42), nullable=True),
        sa.Column("buyer_chain_id", sa.BigInteger, nullable=True),
        sa.Column("status", sa.String(128), nullable=True),
        sa.Column("expected_amount_wei", sa.Numeric(78, 0), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_tx_hash", sa.String(66), nullable=True),
        sa.Column("paid_log_index", sa.Integer, nullable=True),
        sa.Column("paid_chain_id", sa.BigInteger, nullable=True),
        sa.Column("paid_gateway", sa.String(42), nullable=True),
        sa.Column("paid_amount_wei", sa.Numeric(78, 0), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])
    op.create_index("ix_orders_buyer", "orders", ["buyer_address", "buyer_chain_id"])

    # --- ORDER_LINES ---
    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "order_id",
            sa.String(64),
            sa.ForeignKey("orders.order_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("line_index", sa.Integer, nullable=False),
        sa.Column("seller_id", sa.String(128), nullable=True),
        sa.Column("sku", sa.String(128), nullable=True),
        sa.Column("fulfillment_trigger", sa.String(16), nullable=True),
        sa.UniqueConstraint("order_id", "line_index", name="uq_order_line"),
    )

    # --- ORDER_STATUS_HISTORY ---
    op.create_table(
        "order_status_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("old_status", sa.String(128), nullable=True),
        sa.Column("new_status", sa.String(128), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_order_status_history_order", "order_status_history", ["order_id", "changed_at"]
    )

    # --- ORDER_OUTBOX ---
    op.create_table(
        "order_outbox",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(64), nullable=True),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_order_outbox_order", "order_outbox", ["order_id"])


def downgrade() -> None:
    op.drop_table("order_outbox")
    op.drop_table("order_status_history")
    op.drop_table("order_lines")
    op.drop_table("orders")
