"""Production lifecycle hooks: live status events and fulfillment triggers."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING

from chainpay.core.status_bus import OrderStatusEvent, OrderStatusEventBus
from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.connectors.fulfillment_client import FulfillmentClient
    from chainpay.core.order_store import SqlOrderStore

logger = get_logger("market_hooks")

DEFAULT_TRIGGER = "finalized"


def parse_seller_id(seller_id: str | None) -> tuple[int, str] | None:
    """Split ``eip155:{chain}:{address}`` into (chain, lower-cased address)."""
    if not seller_id:
        return None
    parts = [p.strip() for p in seller_id.split(":") if p.strip()]
    if len(parts) != 3 or parts[0].lower() != "eip155":
        return None
    try:
        chain_id = int(parts[1])
    except ValueError:
        return None
    return chain_id, parts[2].lower()


class MarketLifecycleHooks:
    """LifecycleHooks over the order store, status bus and fulfillment client.

    Failures are logged per order or per line and never raised.
    """

    def __init__(
        self,
        orders: SqlOrderStore,
        bus: OrderStatusEventBus,
        fulfillment: FulfillmentClient | None = None,
    ) -> None:
        self._orders = orders
        self._bus = bus
        self._fulfillment = fulfillment

    async def on_paid(
        self,
        payment_reference: str,
        chain_id: int,
        tx_hash: str,
        log_index: int,
        paid_at: datetime,
    ) -> None:
        logger.info("hook_on_paid", payment_reference=payment_reference, tx_hash=tx_hash, log_index=log_index)

    async def on_confirmed(self, payment_reference: str, confirmed_at: datetime) -> None:
        await self._run_fulfillment(payment_reference, "confirmed")

    async def on_finalized(self, payment_reference: str, finalized_at: datetime) -> None:
        await self._run_fulfillment(payment_reference, "finalized")

    async def on_status_changed(
        self,
        order_key: str,
        old_status: str | None,
        new_status: str,
        changed_at: datetime,
    ) -> None:
        """Publish one buyer event and one event per distinct seller for each order."""
        try:
            orders = await self._orders.lookup_orders_by_payment_reference(order_key)
        except Exception:
            logger.error("status_publish_failed", payment_reference=order_key, exc_info=True)
            return

        for order in orders:
            base = OrderStatusEvent(
                order_id=order.order_id,
                payment_reference=order_key,
                old_status=old_status,
                new_status=new_status,
                changed_at=changed_at,
                buyer_address=order.buyer_address,
                buyer_chain_id=order.buyer_chain_id,
            )
            self._bus.publish(base)

            seen: set[tuple[int, str]] = set()
            for line in order.seller_lines:
                parsed = parse_seller_id(line.seller_id)
                if parsed is None or parsed in seen:
                    continue
                seen.add(parsed)
                seller_chain, seller_addr = parsed
                self._bus.publish(
                    OrderStatusEvent(
                        order_id=order.order_id,
                        payment_reference=order_key,
                        old_status=old_status,
                        new_status=new_status,
                        changed_at=changed_at,
                        buyer_address=order.buyer_address,
                        buyer_chain_id=order.buyer_chain_id,
                        seller_address=seller_addr,
                        seller_chain_id=seller_chain,
                    ),
                    to_buyer=False,
                )
            logger.debug(
                "status_published",
                order_id=order.order_id,
                new_status=new_status,
                sellers=len(seen),
            )

    async def _run_fulfillment(self, payment_reference: str, trigger: str) -> None:
        if self._fulfillment is None or not self._fulfillment.enabled:
            return
        try:
            orders = await self._orders.lookup_orders_by_payment_reference(payment_reference)
        except Exception:
            logger.error("fulfillment_lookup_failed", payment_reference=payment_reference, exc_info=True)
            return

        for order in orders:
            for line in order.seller_lines:
                parsed = parse_seller_id(line.seller_id)
                sku = (line.sku or "").strip().lower()
                if parsed is None or not sku:
                    continue
                line_trigger = (line.fulfillment_trigger or DEFAULT_TRIGGER).strip().lower()
                if line_trigger != trigger:
                    continue

                try:
                    payload = await self._fulfillment.fulfill(
                        order_id=order.order_id,
                        payment_reference=payment_reference,
                        trigger=trigger,
                        seller=f"eip155:{parsed[0]}:{parsed[1]}",
                        sku=sku,
                    )
                    await self._orders.add_outbox_item(order.order_id, "fulfillment", payload)
                except Exception:
                    logger.error(
                        "fulfillment_failed",
                        order_id=order.order_id,
                        line_index=line.line_index,
                        trigger=trigger,
                        exc_info=True,
                    )
