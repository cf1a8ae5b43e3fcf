"""Database engine, session management, and SQLAlchemy 2.0 async models.

Payment gateway schema. All timestamps UTC. All amounts are wei-scale
unsigned integers and never pass through floating point.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from decimal import Decimal
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Dialect  # noqa: TC002
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from chainpay.config.settings import get_config


class Base(DeclarativeBase):
    pass


class WeiAmount(TypeDecorator[int]):
    """Arbitrary-precision unsigned integer.

    NUMERIC(78,0) on PostgreSQL (enough for any uint256), decimal text on
    other dialects so SQLite never coerces large values to REAL.
    """

    impl = Numeric(78, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> sa.types.TypeEngine[Any]:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value: int | None, dialect: Dialect) -> Any:
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError("wei amounts are unsigned")
        if dialect.name == "postgresql":
            return Decimal(value)
        return str(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> int | None:
        if value is None:
            return None
        return int(value)


_JSON = JSON().with_variant(JSONB(), "postgresql")


# ================================================================
# PAYMENT_TRANSFERS: one row per on-chain PaymentReceived log
# ================================================================
class PaymentTransfer(Base):
    __tablename__ = "payment_transfers"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    tx_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    log_index: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    transaction_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(256), nullable=False)
    gateway_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payer_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    amount_wei: Mapped[int | None] = mapped_column(WeiAmount, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_payment_transfers_ref", "chain_id", "payment_reference"),
        Index("ix_payment_transfers_block", "block_number"),
        Index("ix_payment_transfers_gateway", "gateway_address"),
    )


# ================================================================
# PAYMENTS: per-reference aggregate of payment_transfers
# ================================================================
class Payment(Base):
    __tablename__ = "payments"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    payment_reference: Mapped[str] = mapped_column(String(256), primary_key=True)
    gateway_address: Mapped[str] = mapped_column(String(42), nullable=False)
    payer_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    total_amount_wei: Mapped[int | None] = mapped_column(WeiAmount, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="observed")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    first_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    first_log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    last_log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_block", "chain_id", "status", "first_block_number"),
        Index("ix_payments_gateway", "gateway_address"),
        Index("ix_payments_payer", "payer_address"),
    )


# ================================================================
# PAYMENTS_CURSORS: last ingested (block, tx index, log index) per chain
# ================================================================
class PaymentCursor(Base):
    __tablename__ = "payments_cursors"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    last_block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_transaction_index: Mapped[int] = mapped_column(Integer, nullable=False)
    last_log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# ================================================================
# ORDERS: owned by the order collaborator (reference implementation)
# ================================================================
class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String(256), nullable=False)
    buyer_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    buyer_chain_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expected_amount_wei: Mapped[int | None] = mapped_column(WeiAmount, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    paid_log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_chain_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    paid_gateway: Mapped[str | None] = mapped_column(String(42), nullable=True)
    paid_amount_wei: Mapped[int | None] = mapped_column(WeiAmount, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_orders_payment_reference", "payment_reference"),
        Index("ix_orders_buyer", "buyer_address", "buyer_chain_id"),
    )


class OrderLine(Base):
    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False
    )
    line_index: Mapped[int] = mapped_column(Integer, nullable=False)
    seller_id: Mapped[str | None] = mapped_column(String(128), nullable=True)  # eip155:{chain}:{addr}
    sku: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fulfillment_trigger: Mapped[str | None] = mapped_column(String(16), nullable=True)

    __table_args__ = (UniqueConstraint("order_id", "line_index", name="uq_order_line"),)


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(128), nullable=True)
    new_status: Mapped[str] = mapped_column(String(128), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_order_status_history_order", "order_id", "changed_at"),)


class OrderOutbox(Base):
    __tablename__ = "order_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(_JSON, nullable=False)  # type: ignore[type-arg]
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_order_outbox_order", "order_id"),)


# ================================================================
# Dialect helpers for INSERT ... ON CONFLICT
# ================================================================


def upsert_for(session: AsyncSession, model: type[Base]) -> Any:
    """Return a dialect insert() that supports on_conflict_do_* for the session's engine."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"upsert not supported on {dialect}")


def least(session: AsyncSession, *args: Any) -> Any:
    """Scalar minimum: LEAST() on PostgreSQL, multi-arg min() on SQLite."""
    if session.get_bind().dialect.name == "postgresql":
        return func.least(*args)
    return func.min(*args)


# Tables the poller owns and requires at startup
OWNED_TABLES = ("payment_transfers", "payments", "payments_cursors")


class SchemaError(RuntimeError):
    """Required tables are missing."""


# ================================================================
# Engine & Session Factory
# ================================================================

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async SQLAlchemy engine (singleton)."""
    global _engine
    if _engine is None:
        config = get_config()
        kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
        if config.database_url.startswith("postgresql"):
            kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_async_engine(config.database_url, **kwargs)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory (singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections and forget the singletons."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table from metadata. Development only; production uses Alembic."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def verify_schema(engine: AsyncEngine) -> None:
    """Raise SchemaError when any owned table is missing."""
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(sa.inspect(sync_conn).get_table_names()))
    missing = [name for name in OWNED_TABLES if name not in existing]
    if missing:
        raise SchemaError(f"missing tables: {', '.join(missing)}")
