"""Create payment ingestion tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- PAYMENT_TRANSFERS ---
    op.create_table(
        "payment_transfers",
        sa.Column("chain_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("tx_hash", sa.String(66), primary_key=True),
        sa.Column("log_index", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("transaction_index", sa.Integer, nullable=True),
        sa.Column("block_number", sa.BigInteger, nullable=True),
        sa.Column("payment_reference", sa.String(256), nullable=False),
        sa.Column("gateway_address", sa.String(42), nullable=False),
        sa.Column("payer_address", sa.String(42), nullable=True),
        sa.Column("amount_wei", sa.Numeric(78, 0), nullable=True),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount_wei IS NULL OR amount_wei >= 0", name="ck_payment_transfers_amount"),
    )
    op.create_index("ix_payment_transfers_ref", "payment_transfers", ["chain_id", "payment_reference"])
    op.create_index("ix_payment_transfers_block", "payment_transfers", ["block_number"])
    op.create_index("ix_payment_transfers_gateway", "payment_transfers", ["gateway_address"])

    # --- PAYMENTS ---
    op.create_table(
        "payments",
        sa.Column("chain_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("payment_reference", sa.String(256), primary_key=True),
        sa.Column("gateway_address", sa.String(42), nullable=False),
        sa.Column("payer_address", sa.String(42), nullable=True),
        sa.Column("total_amount_wei", sa.Numeric(78, 0), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="observed"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_block_number", sa.BigInteger, nullable=True),
        sa.Column("first_tx_hash", sa.String(66), nullable=True),
        sa.Column("first_log_index", sa.Integer, nullable=True),
        sa.Column("last_block_number", sa.BigInteger, nullable=True),
        sa.Column("last_tx_hash", sa.String(66), nullable=True),
        sa.Column("last_log_index", sa.Integer, nullable=True),
        sa.CheckConstraint(
            "status IN ('observed', 'confirmed', 'finalized')", name="ck_payments_status"
        ),
    )
    op.create_index(
        "ix_payments_status_block", "payments", ["chain_id", "status", "first_block_number"]
    )
    op.create_index("ix_payments_gateway", "payments", ["gateway_address"])
    op.create_index("ix_payments_payer", "payments", ["payer_address"])

    # --- PAYMENTS_CURSORS ---
    op.create_table(
        "payments_cursors",
        sa.Column("chain_id", sa.BigInteger, primary_key=True, autoincrement=False),
        sa.Column("last_block_number", sa.BigInteger, nullable=False),
        sa.Column("last_transaction_index", sa.Integer, nullable=False),
        sa.Column("last_log_index", sa.Integer, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("payments_cursors")
    op.drop_table("payments")
    op.drop_table("payment_transfers")
