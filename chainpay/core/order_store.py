"""SQL implementation of the order collaborator.

Orders, their lines, status history and outbox live in tables owned by
the order side of the system. The payment core only reaches them
through the OrderGateway methods below, each a conditional UPDATE whose
row count says whether the transition actually happened.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime  # noqa: TC003
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from chainpay.core.hooks import PAYMENT_COMPLETE, PAYMENT_PROCESSING
from chainpay.core.order_matcher import OrderRef, SellerLine
from chainpay.utils.db import Order, OrderLine, OrderOutbox, OrderStatusHistory
from chainpay.utils.logger import get_logger

logger = get_logger("order_store")


@dataclass(frozen=True)
class StatusHistoryEntry:
    old_status: str | None
    new_status: str
    changed_at: datetime


@dataclass(frozen=True)
class OutboxItem:
    id: int
    order_id: str
    source: str | None
    payload: dict[str, Any]
    created_at: datetime | None


class SqlOrderStore:
    """Order transitions keyed by payment reference."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def mark_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        gateway_address: str,
        amount_wei: int | None,
        paid_at: datetime,
    ) -> bool:
        """Mark unpaid orders for the reference as paid.

        An order with an expected amount is only marked once the payment
        total covers it.

        Returns:
            True if at least one order changed.
        """
        if not payment_reference or not payment_reference.strip():
            return False

        changed = 0
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order.order_id, Order.status, Order.expected_amount_wei).where(
                    Order.payment_reference == payment_reference,
                    Order.paid_at.is_(None),
                )
            )
            for order_id, old_status, expected in result.all():
                if expected is not None and (amount_wei is None or amount_wei < expected):
                    logger.info(
                        "order_underpaid",
                        order_id=order_id,
                        payment_reference=payment_reference,
                        expected_wei=str(expected),
                        paid_wei=str(amount_wei),
                    )
                    continue

                upd = await session.execute(
                    update(Order)
                    .where(Order.order_id == order_id, Order.paid_at.is_(None))
                    .values(
                        status=PAYMENT_PROCESSING,
                        paid_at=paid_at,
                        paid_tx_hash=tx_hash,
                        paid_log_index=log_index,
                        paid_chain_id=chain_id,
                        paid_gateway=gateway_address,
                        paid_amount_wei=amount_wei,
                    )
                )
                if upd.rowcount > 0:
                    changed += 1
                    session.add(
                        OrderStatusHistory(
                            order_id=order_id,
                            old_status=old_status,
                            new_status=PAYMENT_PROCESSING,
                            changed_at=paid_at,
                        )
                    )
            await session.commit()
        return changed > 0

    async def mark_confirmed(self, payment_reference: str, confirmed_at: datetime) -> bool:
        if not payment_reference or not payment_reference.strip():
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(
                    Order.payment_reference == payment_reference,
                    Order.paid_at.is_not(None),
                    Order.confirmed_at.is_(None),
                )
                .values(confirmed_at=confirmed_at)
            )
            await session.commit()
        return result.rowcount > 0

    async def mark_finalized(self, payment_reference: str, finalized_at: datetime) -> bool:
        if not payment_reference or not payment_reference.strip():
            return False
        async with self._session_factory() as session:
            pending = await session.execute(
                select(Order.order_id, Order.status).where(
                    Order.payment_reference == payment_reference,
                    Order.paid_at.is_not(None),
                    Order.finalized_at.is_(None),
                )
            )
            changed = 0
            for order_id, old_status in pending.all():
                upd = await session.execute(
                    update(Order)
                    .where(Order.order_id == order_id, Order.finalized_at.is_(None))
                    .values(finalized_at=finalized_at, status=PAYMENT_COMPLETE)
                )
                if upd.rowcount > 0:
                    changed += 1
                    session.add(
                        OrderStatusHistory(
                            order_id=order_id,
                            old_status=old_status,
                            new_status=PAYMENT_COMPLETE,
                            changed_at=finalized_at,
                        )
                    )
            await session.commit()
        return changed > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup_orders_by_payment_reference(self, payment_reference: str) -> list[OrderRef]:
        async with self._session_factory() as session:
            orders = (
                await session.execute(
                    select(Order).where(Order.payment_reference == payment_reference).order_by(Order.order_id)
                )
            ).scalars().all()
            if not orders:
                return []

            lines = (
                await session.execute(
                    select(OrderLine)
                    .where(OrderLine.order_id.in_([o.order_id for o in orders]))
                    .order_by(OrderLine.order_id, OrderLine.line_index)
                )
            ).scalars().all()

        by_order: dict[str, list[SellerLine]] = {}
        for line in lines:
            by_order.setdefault(line.order_id, []).append(
                SellerLine(
                    line_index=line.line_index,
                    seller_id=line.seller_id,
                    sku=line.sku,
                    fulfillment_trigger=line.fulfillment_trigger,
                )
            )
        return [
            OrderRef(
                order_id=o.order_id,
                payment_reference=o.payment_reference,
                buyer_address=o.buyer_address,
                buyer_chain_id=o.buyer_chain_id,
                seller_lines=by_order.get(o.order_id, []),
            )
            for o in orders
        ]

    async def get_order(self, order_id: str) -> Order | None:
        async with self._session_factory() as session:
            return await session.get(Order, order_id)

    async def get_status_history(self, order_id: str) -> list[StatusHistoryEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.changed_at, OrderStatusHistory.id)
            )
            return [
                StatusHistoryEntry(r.old_status, r.new_status, r.changed_at)
                for r in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    async def add_outbox_item(
        self, order_id: str, source: str | None, payload: dict[str, Any], note: str | None = None
    ) -> None:
        async with self._session_factory() as session:
            session.add(OrderOutbox(order_id=order_id, source=source, payload=payload, note=note))
            await session.commit()

    async def get_outbox_items(self, order_id: str) -> list[OutboxItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderOutbox).where(OrderOutbox.order_id == order_id).order_by(OrderOutbox.id)
            )
            return [
                OutboxItem(r.id, r.order_id, r.source, r.payload, r.created_at)
                for r in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def create_order(
        self,
        order_id: str,
        payment_reference: str,
        buyer_address: str | None = None,
        buyer_chain_id: int | None = None,
        expected_amount_wei: int | None = None,
        lines: list[SellerLine] | None = None,
        status: str | None = None,
    ) -> None:
        """Insert an order with its lines. Used by tooling and tests."""
        async with self._session_factory() as session:
            session.add(
                Order(
                    order_id=order_id,
                    payment_reference=payment_reference,
                    buyer_address=buyer_address.lower() if buyer_address else None,
                    buyer_chain_id=buyer_chain_id,
                    expected_amount_wei=expected_amount_wei,
                    status=status,
                )
            )
            await session.flush()
            for line in lines or []:
                session.add(
                    OrderLine(
                        order_id=order_id,
                        line_index=line.line_index,
                        seller_id=line.seller_id,
                        sku=line.sku,
                        fulfillment_trigger=line.fulfillment_trigger,
                    )
                )
            await session.commit()
