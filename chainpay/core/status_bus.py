"""In-memory fan-out of order status changes to live subscribers.

Subscribers are keyed by (lower-cased address, chain id), either as
buyer or as seller. Each subscription owns a bounded queue; when it is
full, publishing drops the oldest queued event so a slow reader never
blocks the publisher.

    bus = OrderStatusEventBus(capacity=100, max_subscribers=100)
    with bus.subscribe_buyer("0xabc...", 100) as sub:
        async for event in sub:
            ...
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime  # noqa: TC003
from enum import Enum

from chainpay.utils.logger import get_logger

logger = get_logger("status_bus")


class SubscriberRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class SubscriptionLimitError(RuntimeError):
    """Too many subscribers for one (address, chain) key."""


@dataclass(frozen=True)
class OrderStatusEvent:
    order_id: str
    payment_reference: str | None
    old_status: str | None
    new_status: str
    changed_at: datetime
    buyer_address: str | None = None
    buyer_chain_id: int | None = None
    seller_address: str | None = None
    seller_chain_id: int | None = None


_Key = tuple[SubscriberRole, str, int]


class Subscription:
    """One subscriber's bounded event queue. Iterate it, close it when done."""

    def __init__(self, bus: OrderStatusEventBus, key: _Key, capacity: int) -> None:
        self._bus = bus
        self.key = key
        self._queue: asyncio.Queue[OrderStatusEvent] = asyncio.Queue(maxsize=capacity)
        self.dropped = 0
        self.closed = False

    def offer(self, event: OrderStatusEvent) -> None:
        """Enqueue without blocking, evicting the oldest event when full."""
        if self.closed:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: float | None = None) -> OrderStatusEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    async def __aiter__(self) -> AsyncIterator[OrderStatusEvent]:
        try:
            while not self.closed:
                yield await self._queue.get()
        finally:
            self.close()


class OrderStatusEventBus:
    """Buyer- and seller-scoped pub/sub for OrderStatusEvent."""

    def __init__(self, capacity: int = 100, max_subscribers: int = 100) -> None:
        self._capacity = max(1, capacity)
        self._max_subscribers = max(1, max_subscribers)
        self._subs: dict[_Key, set[Subscription]] = {}

    def subscribe_buyer(self, buyer_address: str, chain_id: int) -> Subscription:
        return self._subscribe(SubscriberRole.BUYER, buyer_address, chain_id)

    def subscribe_seller(self, seller_address: str, chain_id: int) -> Subscription:
        return self._subscribe(SubscriberRole.SELLER, seller_address, chain_id)

    def subscriber_count(self, role: SubscriberRole, address: str, chain_id: int) -> int:
        return len(self._subs.get((role, address.strip().lower(), chain_id), ()))

    def publish(self, event: OrderStatusEvent, to_buyer: bool = True, to_seller: bool = True) -> int:
        """Deliver to the buyer group and, if set, the seller group.

        Seller-scoped copies of a buyer event pass to_buyer=False so the
        buyer sees each transition once.

        Returns:
            Number of subscriptions the event was offered to.
        """
        delivered = 0
        targets: list[tuple[SubscriberRole, str | None, int | None]] = []
        if to_buyer:
            targets.append((SubscriberRole.BUYER, event.buyer_address, event.buyer_chain_id))
        if to_seller:
            targets.append((SubscriberRole.SELLER, event.seller_address, event.seller_chain_id))
        for role, address, chain_id in targets:
            if not address or not address.strip() or not chain_id or chain_id <= 0:
                continue
            for sub in list(self._subs.get((role, address.strip().lower(), chain_id), ())):
                sub.offer(event)
                delivered += 1
        return delivered

    def _subscribe(self, role: SubscriberRole, address: str, chain_id: int) -> Subscription:
        if not address or not address.strip() or chain_id <= 0:
            raise ValueError("subscription needs a non-empty address and a positive chain id")
        key: _Key = (role, address.strip().lower(), chain_id)
        group = self._subs.setdefault(key, set())
        if len(group) >= self._max_subscribers:
            if not group:
                del self._subs[key]
            logger.warning("status_subscription_rejected", role=role.value, address=key[1], chain_id=chain_id)
            raise SubscriptionLimitError(f"max {self._max_subscribers} subscribers per key")
        sub = Subscription(self, key, self._capacity)
        group.add(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        group = self._subs.get(sub.key)
        if group is None:
            return
        group.discard(sub)
        if not group:
            del self._subs[sub.key]
