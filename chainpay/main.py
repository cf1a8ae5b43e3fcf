"""Payments service orchestrator.

Wires config, database, chain source, ingestion, confirmation, order
matching and lifecycle hooks into one PaymentsPoller, then runs it until
SIGINT/SIGTERM.

Startup is the only place where failures are fatal: a missing RPC_URL or
missing tables abort the process before the first tick.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import TYPE_CHECKING

from chainpay.config.settings import ChainPayConfig, get_config
from chainpay.connectors.chain_source import ChainEventSource
from chainpay.connectors.fulfillment_client import FulfillmentClient
from chainpay.core.confirmation import ConfirmationEngine
from chainpay.core.cursor_store import CursorStore
from chainpay.core.hooks import HookDispatcher
from chainpay.core.ingestor import TransferIngestor
from chainpay.core.market_hooks import MarketLifecycleHooks
from chainpay.core.order_matcher import OrderMatcher
from chainpay.core.order_store import SqlOrderStore
from chainpay.core.payment_store import PaymentStore
from chainpay.core.poller import PaymentsPoller
from chainpay.core.status_bus import OrderStatusEventBus
from chainpay.utils.db import create_schema, dispose_engine, get_engine, get_session_factory, verify_schema
from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = get_logger("service")


class StartupError(RuntimeError):
    """Configuration or schema problem that prevents the service from starting."""


class PaymentsService:
    """Owns every component and their shutdown order.

    Args:
        config: Application config; defaults to get_config().
        engine: Async engine; defaults to the shared engine.
        session_factory: Session factory bound to engine.
    """

    def __init__(
        self,
        config: ChainPayConfig | None = None,
        engine: AsyncEngine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._config = config or get_config()
        self._engine = engine
        self._session_factory = session_factory
        self._owns_engine = engine is None
        self._shutdown_event = asyncio.Event()

        self.source: ChainEventSource | None = None
        self.fulfillment: FulfillmentClient | None = None
        self.bus: OrderStatusEventBus | None = None
        self.dispatcher: HookDispatcher | None = None
        self.poller: PaymentsPoller | None = None
        self._poller_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, create_tables: bool = False) -> None:
        """Initialize, run until a shutdown signal, then stop."""
        logger.info("service_starting", chain_id=self._config.chain_id, mode=self._config.mode)
        await self.init_components(create_tables=create_tables)
        self._install_signal_handlers()

        poller = self._require_poller()
        self._poller_task = asyncio.create_task(poller.run(), name="payments_poller")
        logger.info("service_started")

        # Block until a signal arrives or the poller exits on its own
        waiter = asyncio.create_task(self._shutdown_event.wait(), name="shutdown_waiter")
        await asyncio.wait({self._poller_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await waiter
        await self.stop()

    async def run_once(self, create_tables: bool = False) -> None:
        """Single tick, then drain hooks and close. Useful for cron-style runs."""
        await self.init_components(create_tables=create_tables)
        try:
            poller = self._require_poller()
            result = await poller.tick()
            logger.info(
                "tick_complete",
                rows=result.rows,
                head=result.head,
                confirmed=len(result.confirmed),
                finalized=len(result.finalized),
                aborted=result.aborted,
            )
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop ticking, drain in-flight hooks, close sessions."""
        logger.info("service_stopping")
        if self.poller is not None:
            self.poller.stop()
        if self._poller_task is not None and not self._poller_task.done():
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._poller_task

        if self.dispatcher is not None:
            await self.dispatcher.drain(self._config.hook_drain_seconds)

        await self._close_components()
        logger.info("service_stopped")

    # ------------------------------------------------------------------
    # Component initialization
    # ------------------------------------------------------------------

    async def init_components(self, create_tables: bool = False) -> None:
        config = self._config
        if not config.rpc_url:
            raise StartupError("RPC_URL is required")

        if self._engine is None:
            self._engine = get_engine()
        if self._session_factory is None:
            self._session_factory = get_session_factory()

        if create_tables:
            await create_schema(self._engine)
            logger.info("schema_created")
        try:
            await verify_schema(self._engine)
        except Exception as e:
            logger.error("schema_check_failed", error=str(e))
            raise StartupError(f"schema check failed: {e}") from e

        orders = SqlOrderStore(self._session_factory)
        self.bus = OrderStatusEventBus(
            capacity=config.status_channel_capacity,
            max_subscribers=config.status_max_subscribers,
        )
        self.fulfillment = FulfillmentClient(config.fulfillment_url, config.fulfillment_timeout_seconds)
        hooks = MarketLifecycleHooks(orders, self.bus, self.fulfillment)
        self.dispatcher = HookDispatcher(hooks, concurrency=config.hook_concurrency)
        matcher = OrderMatcher(orders, self.dispatcher)

        payments = PaymentStore(self._session_factory)
        self.source = ChainEventSource(config)
        self.poller = PaymentsPoller(
            config=config,
            source=self.source,
            cursors=CursorStore(self._session_factory, config.chain_id),
            ingestor=TransferIngestor(
                payments, config.chain_id, gateways=config.gateway_allow_list, matcher=matcher
            ),
            confirmation=ConfirmationEngine(
                payments,
                config.chain_id,
                confirm_depth=config.confirm_confirmations,
                finalize_depth=config.finalize_confirmations,
                matcher=matcher,
            ),
        )

    def _require_poller(self) -> PaymentsPoller:
        if self.poller is None:
            raise StartupError("poller not initialized")
        return self.poller

    async def _close_components(self) -> None:
        if self.source is not None:
            await self.source.close()
        if self.fulfillment is not None:
            await self.fulfillment.close()
        if self._owns_engine:
            await dispose_engine()

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers to trigger graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self._shutdown_event.set()
        if self.poller is not None:
            self.poller.stop()
