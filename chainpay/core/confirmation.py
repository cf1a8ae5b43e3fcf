"""Depth-based promotion of payments: observed → confirmed → finalized.

Both sweeps take the same head height, fetched once per tick by the
poller. A depth of 0 disables its sweep. When confirm depth exceeds
finalize depth, payments can jump straight from observed to finalized;
that configuration is tolerated with a warning at startup.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.core.order_matcher import OrderMatcher
    from chainpay.core.payment_store import PaymentStore

logger = get_logger("confirmation")


class ConfirmationEngine:
    """Confirm and finalize sweeps over the payments table.

    Args:
        store: Payment persistence.
        chain_id: Chain whose payments are swept.
        confirm_depth: Blocks past the first transfer before confirmation.
        finalize_depth: Blocks past the first transfer before finalization.
        matcher: Order matcher notified after each real transition.
        clock: Source of confirmed_at / finalized_at timestamps.
    """

    def __init__(
        self,
        store: PaymentStore,
        chain_id: int,
        confirm_depth: int,
        finalize_depth: int,
        matcher: OrderMatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._chain_id = chain_id
        self._confirm_depth = confirm_depth
        self._finalize_depth = finalize_depth
        self._matcher = matcher
        self._clock = clock or (lambda: datetime.now(UTC))

    async def confirm_sweep(self, head: int) -> list[str]:
        """Confirm every observed payment with first block ≤ head - confirm_depth.

        Returns:
            References that moved to confirmed during this sweep.
        """
        if self._confirm_depth <= 0:
            return []
        threshold = head - self._confirm_depth
        if threshold < 0:
            return []

        confirmed: list[str] = []
        for ref in await self._store.confirm_candidates(self._chain_id, threshold):
            now = self._clock()
            if not await self._store.mark_confirmed(self._chain_id, ref, now):
                continue
            confirmed.append(ref)
            logger.info("payment_confirmed", payment_reference=ref, head=head, threshold=threshold)

            if self._matcher is not None:
                payment = await self._store.get_payment(self._chain_id, ref)
                if payment is not None:
                    await self._matcher.on_confirmed(payment)
        return confirmed

    async def finalize_sweep(self, head: int) -> list[str]:
        """Finalize every non-finalized payment with first block ≤ head - finalize_depth.

        Returns:
            References that moved to finalized during this sweep.
        """
        if self._finalize_depth <= 0:
            return []
        threshold = head - self._finalize_depth
        if threshold < 0:
            return []

        finalized: list[str] = []
        for ref in await self._store.finalize_candidates(self._chain_id, threshold):
            now = self._clock()
            if not await self._store.mark_finalized(self._chain_id, ref, now):
                continue
            finalized.append(ref)
            logger.info("payment_finalized", payment_reference=ref, head=head, threshold=threshold)

            if self._matcher is not None:
                payment = await self._store.get_payment(self._chain_id, ref)
                if payment is not None:
                    await self._matcher.on_finalized(payment)
        return finalized
