"""Sequential payments poll loop.

One tick:
  1. Load cursor, fetch the next page of PaymentReceived rows
  2. Ingest the page, advance the cursor to the last processed position
  3. Fetch head height once
  4. Confirm sweep, then finalize sweep

A chain query failure or a database error while ingesting ends the tick
with the cursor untouched. A head height failure only skips the sweeps.
The loop sleeps POLL_SECONDS between ticks and exits at the next tick
boundary once stop() is called.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from chainpay.connectors.chain_source import ChainSourceError
from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.config.settings import ChainPayConfig
    from chainpay.connectors.chain_source import ChainEventSource
    from chainpay.core.confirmation import ConfirmationEngine
    from chainpay.core.cursor_store import Cursor, CursorStore
    from chainpay.core.ingestor import IngestStats, TransferIngestor

logger = get_logger("poller")


@dataclass
class TickResult:
    cursor_before: Cursor | None = None
    cursor_after: Cursor | None = None
    rows: int = 0
    stats: IngestStats | None = None
    head: int | None = None
    confirmed: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    aborted: str | None = None


class PaymentsPoller:
    """Drives ingestion and confirmation for one chain.

    Args:
        config: Immutable application config.
        source: Chain event source.
        cursors: Cursor persistence for config.chain_id.
        ingestor: Page ingestor.
        confirmation: Confirm/finalize sweeps.
    """

    def __init__(
        self,
        config: ChainPayConfig,
        source: ChainEventSource,
        cursors: CursorStore,
        ingestor: TransferIngestor,
        confirmation: ConfirmationEngine,
    ) -> None:
        self._config = config
        self._source = source
        self._cursors = cursors
        self._ingestor = ingestor
        self._confirmation = confirmation
        self._timeout_s = config.request_timeout_seconds
        self._shutdown = asyncio.Event()

        if config.depth_inversion:
            logger.warning(
                "confirmation_depth_inversion",
                confirm=config.confirm_confirmations,
                finalize=config.finalize_confirmations,
                note="payments may skip confirmed and go straight to finalized",
            )

    @property
    def stopping(self) -> bool:
        return self._shutdown.is_set()

    def stop(self) -> None:
        """Finish the current tick and stop scheduling new ones."""
        self._shutdown.set()

    async def run(self) -> None:
        logger.info(
            "poller_started",
            chain_id=self._config.chain_id,
            poll_seconds=self._config.poll_seconds,
            page_size=self._config.page_size,
            confirm=self._config.confirm_confirmations,
            finalize=self._config.finalize_confirmations,
            gateways=len(self._config.gateway_allow_list),
        )
        while not self._shutdown.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("tick_failed", exc_info=True)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._config.poll_seconds)
        logger.info("poller_stopped")

    async def tick(self) -> TickResult:
        result = TickResult()

        # ---- Ingest ----
        cursor = await self._cursors.load()
        result.cursor_before = cursor
        result.cursor_after = cursor

        try:
            page = await asyncio.wait_for(
                self._source.fetch_since(cursor, self._config.page_size), timeout=self._timeout_s
            )
        except (ChainSourceError, asyncio.TimeoutError) as e:
            logger.warning("chain_query_failed", error=str(e) or type(e).__name__, cursor=cursor.as_tuple())
            result.aborted = "chain_query"
            return result
        result.rows = len(page)

        try:
            stats = await self._ingestor.ingest_page(page)
        except SQLAlchemyError:
            logger.error("ingest_failed", cursor=cursor.as_tuple(), exc_info=True)
            result.aborted = "ingest"
            return result
        result.stats = stats

        if stats.last_position is not None and stats.last_position > cursor:
            if await self._cursors.save(stats.last_position):
                result.cursor_after = stats.last_position
                logger.info(
                    "cursor_advanced",
                    previous=cursor.as_tuple(),
                    cursor=stats.last_position.as_tuple(),
                    processed=stats.processed,
                )

        # ---- Confirm / finalize ----
        try:
            head = await asyncio.wait_for(self._source.head_height(), timeout=self._timeout_s)
        except (ChainSourceError, asyncio.TimeoutError) as e:
            logger.warning("head_height_failed", error=str(e) or type(e).__name__)
            result.aborted = "head_height"
            return result
        result.head = head

        try:
            result.confirmed = await self._confirmation.confirm_sweep(head)
        except SQLAlchemyError:
            logger.error("confirm_sweep_failed", head=head, exc_info=True)

        try:
            result.finalized = await self._confirmation.finalize_sweep(head)
        except SQLAlchemyError:
            logger.error("finalize_sweep_failed", head=head, exc_info=True)

        return result
