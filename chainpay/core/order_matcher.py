"""Bind aggregated payments to orders and fire hooks on real transitions.

The order collaborator owns the orders table; this module only talks to
it through OrderGateway. Each mark_* reports whether it changed a row,
and only a change is allowed to schedule hook dispatch, which makes
repeated observations of the same payment silent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING, Protocol

from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.core.hooks import HookDispatcher
    from chainpay.core.payment_store import PaymentRecord

logger = get_logger("order_matcher")


@dataclass(frozen=True)
class SellerLine:
    line_index: int
    seller_id: str | None
    sku: str | None
    fulfillment_trigger: str | None = None


@dataclass(frozen=True)
class OrderRef:
    order_id: str
    payment_reference: str
    buyer_address: str | None
    buyer_chain_id: int | None
    seller_lines: list[SellerLine] = field(default_factory=list)


class OrderGateway(Protocol):
    """Idempotent order transitions keyed by payment reference."""

    async def mark_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        gateway_address: str,
        amount_wei: int | None,
        paid_at: datetime,
    ) -> bool: ...

    async def mark_confirmed(self, payment_reference: str, confirmed_at: datetime) -> bool: ...

    async def mark_finalized(self, payment_reference: str, finalized_at: datetime) -> bool: ...

    async def lookup_orders_by_payment_reference(self, payment_reference: str) -> list[OrderRef]: ...


class OrderMatcher:
    """Observe/confirm/finalize steps against the order collaborator.

    An order created after its payment was first observed is picked up by
    the next confirm or finalize step, which retries mark_paid first.
    """

    def __init__(self, orders: OrderGateway, dispatcher: HookDispatcher) -> None:
        self._orders = orders
        self._dispatcher = dispatcher

    async def on_observed(self, payment: PaymentRecord) -> bool:
        """Mark orders for this reference paid. True if any order changed."""
        if not payment.payment_reference:
            return False

        changed = await self._orders.mark_paid(
            payment_reference=payment.payment_reference,
            chain_id=payment.chain_id,
            tx_hash=payment.first_tx_hash or "",
            log_index=payment.first_log_index or 0,
            gateway_address=payment.gateway_address,
            amount_wei=payment.total_amount_wei,
            paid_at=payment.created_at,
        )
        if not changed:
            return False

        logger.info(
            "order_paid",
            payment_reference=payment.payment_reference,
            tx_hash=payment.first_tx_hash,
            log_index=payment.first_log_index,
            amount_wei=str(payment.total_amount_wei),
        )
        self._dispatcher.dispatch_paid(
            payment.payment_reference,
            payment.chain_id,
            payment.first_tx_hash or "",
            payment.first_log_index or 0,
            payment.created_at,
        )
        return True

    async def on_confirmed(self, payment: PaymentRecord) -> bool:
        if not payment.payment_reference or payment.confirmed_at is None:
            return False

        await self.on_observed(payment)
        changed = await self._orders.mark_confirmed(payment.payment_reference, payment.confirmed_at)
        if not changed:
            return False

        logger.info("order_confirmed", payment_reference=payment.payment_reference)
        self._dispatcher.dispatch_confirmed(payment.payment_reference, payment.confirmed_at)
        return True

    async def on_finalized(self, payment: PaymentRecord) -> bool:
        if not payment.payment_reference or payment.finalized_at is None:
            return False

        await self.on_observed(payment)
        changed = await self._orders.mark_finalized(payment.payment_reference, payment.finalized_at)
        if not changed:
            return False

        logger.info("order_finalized", payment_reference=payment.payment_reference)
        self._dispatcher.dispatch_finalized(payment.payment_reference, payment.finalized_at)
        return True
