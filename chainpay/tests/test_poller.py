"""Tests for the poll loop, including a full observe → confirm → finalize run."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainpay.config.settings import ChainPayConfig
from chainpay.connectors.chain_source import ChainQueryError, HeadHeightError, QueryResult
from chainpay.core.confirmation import ConfirmationEngine
from chainpay.core.cursor_store import GENESIS, Cursor, CursorStore
from chainpay.core.hooks import PAYMENT_COMPLETE, PAYMENT_PROCESSING, HookDispatcher
from chainpay.core.ingestor import IngestStats, TransferIngestor
from chainpay.core.market_hooks import MarketLifecycleHooks
from chainpay.core.order_matcher import OrderMatcher, SellerLine
from chainpay.core.order_store import SqlOrderStore
from chainpay.core.payment_store import PaymentStatus, PaymentStore
from chainpay.core.poller import PaymentsPoller
from chainpay.core.status_bus import OrderStatusEventBus

REF = "pay_ABCDEF0123456789ABCDEF0123456789"
GATEWAY = "0x1111111111111111111111111111111111111111"
BUYER = "0xb000000000000000000000000000000000000001"
SELLER = "0xa00000000000000000000000000000000000000a"

COLUMNS = ["blockNumber", "transactionIndex", "logIndex", "transactionHash", "gateway", "payer", "amount", "data"]


def _row(block: int, log_index: int = 0, tx_hash: str = "0xaaa", amount: str = "1000") -> list[Any]:
    return [block, 0, log_index, tx_hash, GATEWAY, None, amount, "0x" + REF.encode().hex()]


class FakeSource:
    """In-memory chain: returns rows strictly after the cursor."""

    def __init__(self, rows: list[list[Any]], heads: list[Any]) -> None:
        self.rows = rows
        self.head_height = AsyncMock(side_effect=heads)
        self.queries: list[Cursor] = []

    async def fetch_since(self, cursor: Cursor, page_size: int | None = None) -> QueryResult:
        self.queries.append(cursor)
        after = [r for r in self.rows if Cursor(r[0], r[1], r[2]) > cursor]
        return QueryResult(columns=list(COLUMNS), rows=after[: page_size or len(after)])

    async def close(self) -> None:
        return None


def _mock_cursors(position: Cursor = GENESIS) -> MagicMock:
    cursors = MagicMock()
    cursors.load = AsyncMock(return_value=position)
    cursors.save = AsyncMock(return_value=True)
    return cursors


def _mock_confirmation() -> MagicMock:
    confirmation = MagicMock()
    confirmation.confirm_sweep = AsyncMock(return_value=[])
    confirmation.finalize_sweep = AsyncMock(return_value=[])
    return confirmation


def _mock_ingestor(last_position: Cursor | None = None) -> MagicMock:
    ingestor = MagicMock()
    ingestor.ingest_page = AsyncMock(return_value=IngestStats(processed=1, last_position=last_position))
    return ingestor


class TestTick:
    async def test_query_failure_leaves_cursor(self, config: ChainPayConfig) -> None:
        source = MagicMock()
        source.fetch_since = AsyncMock(side_effect=ChainQueryError("rpc down"))
        source.head_height = AsyncMock(return_value=200)
        cursors = _mock_cursors(Cursor(50, 0, 0))
        confirmation = _mock_confirmation()

        poller = PaymentsPoller(config, source, cursors, _mock_ingestor(), confirmation)
        result = await poller.tick()

        assert result.aborted == "chain_query"
        assert result.cursor_after == Cursor(50, 0, 0)
        cursors.save.assert_not_awaited()
        source.head_height.assert_not_awaited()
        confirmation.confirm_sweep.assert_not_awaited()

    async def test_slow_query_times_out(self, config_factory: Callable[..., ChainPayConfig]) -> None:
        async def slow(*args: object) -> QueryResult:
            await asyncio.sleep(5)
            return QueryResult()

        source = MagicMock()
        source.fetch_since = slow
        cursors = _mock_cursors()

        poller = PaymentsPoller(
            config_factory(request_timeout_seconds=0.05), source, cursors, _mock_ingestor(), _mock_confirmation()
        )
        result = await poller.tick()

        assert result.aborted == "chain_query"
        cursors.save.assert_not_awaited()

    async def test_ingest_db_error_skips_cursor_save(self, config: ChainPayConfig) -> None:
        source = FakeSource([_row(100)], heads=[200])
        ingestor = MagicMock()
        ingestor.ingest_page = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        cursors = _mock_cursors()
        confirmation = _mock_confirmation()

        result = await PaymentsPoller(config, source, cursors, ingestor, confirmation).tick()

        assert result.aborted == "ingest"
        cursors.save.assert_not_awaited()
        confirmation.confirm_sweep.assert_not_awaited()

    async def test_head_failure_still_advances_cursor(self, config: ChainPayConfig) -> None:
        source = FakeSource([_row(100)], heads=[HeadHeightError("no head")])
        cursors = _mock_cursors()
        confirmation = _mock_confirmation()

        result = await PaymentsPoller(
            config, source, cursors, _mock_ingestor(Cursor(100, 0, 0)), confirmation
        ).tick()

        assert result.aborted == "head_height"
        cursors.save.assert_awaited_once_with(Cursor(100, 0, 0))
        assert result.cursor_after == Cursor(100, 0, 0)
        confirmation.confirm_sweep.assert_not_awaited()
        confirmation.finalize_sweep.assert_not_awaited()

    async def test_cursor_never_moves_backwards(self, config: ChainPayConfig) -> None:
        source = FakeSource([], heads=[200])
        cursors = _mock_cursors(Cursor(100, 5, 5))

        await PaymentsPoller(
            config, source, cursors, _mock_ingestor(Cursor(100, 5, 4)), _mock_confirmation()
        ).tick()

        cursors.save.assert_not_awaited()

    async def test_sweeps_share_one_head(self, config: ChainPayConfig) -> None:
        source = FakeSource([], heads=[321])
        confirmation = _mock_confirmation()

        result = await PaymentsPoller(
            config, source, _mock_cursors(), _mock_ingestor(), confirmation
        ).tick()

        assert result.head == 321
        source.head_height.assert_awaited_once()
        confirmation.confirm_sweep.assert_awaited_once_with(321)
        confirmation.finalize_sweep.assert_awaited_once_with(321)

    async def test_confirm_failure_does_not_skip_finalize(self, config: ChainPayConfig) -> None:
        source = FakeSource([], heads=[321])
        confirmation = _mock_confirmation()
        confirmation.confirm_sweep.side_effect = OperationalError("UPDATE", {}, Exception("locked"))

        await PaymentsPoller(config, source, _mock_cursors(), _mock_ingestor(), confirmation).tick()

        confirmation.finalize_sweep.assert_awaited_once_with(321)


class TestRun:
    async def test_tick_errors_do_not_stop_loop(self, config: ChainPayConfig) -> None:
        poller = PaymentsPoller(config, MagicMock(), _mock_cursors(), _mock_ingestor(), _mock_confirmation())
        calls = 0

        async def fake_tick() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            poller.stop()

        poller.tick = fake_tick  # type: ignore[method-assign]
        await asyncio.wait_for(poller.run(), timeout=5)

        assert calls == 2
        assert poller.stopping is True

    async def test_stop_before_run(self, config: ChainPayConfig) -> None:
        poller = PaymentsPoller(config, MagicMock(), _mock_cursors(), _mock_ingestor(), _mock_confirmation())
        poller.tick = AsyncMock()  # type: ignore[method-assign]
        poller.stop()

        await asyncio.wait_for(poller.run(), timeout=1)

        poller.tick.assert_not_awaited()


# ================================================================
# End to end over SQLite
# ================================================================


class TestLifecycle:
    @pytest.fixture
    async def wired(
        self, config: ChainPayConfig, session_factory: async_sessionmaker[AsyncSession]
    ) -> dict[str, Any]:
        orders = SqlOrderStore(session_factory)
        await orders.create_order(
            "order-1",
            REF,
            buyer_address=BUYER,
            buyer_chain_id=100,
            lines=[SellerLine(0, f"eip155:100:{SELLER}", "sku-1")],
        )

        bus = OrderStatusEventBus()
        fulfillment = MagicMock()
        fulfillment.enabled = True
        fulfillment.fulfill = AsyncMock(return_value={"code": "VOUCHER-1"})
        dispatcher = HookDispatcher(MarketLifecycleHooks(orders, bus, fulfillment))
        matcher = OrderMatcher(orders, dispatcher)
        payments = PaymentStore(session_factory)
        source = FakeSource([_row(100)], heads=[100, 103, 106])

        ingestor = TransferIngestor(payments, config.chain_id, matcher=matcher)
        poller = PaymentsPoller(
            config,
            source,  # type: ignore[arg-type]
            CursorStore(session_factory, config.chain_id),
            ingestor,
            ConfirmationEngine(payments, config.chain_id, confirm_depth=3, finalize_depth=6, matcher=matcher),
        )
        return {
            "poller": poller,
            "orders": orders,
            "payments": payments,
            "bus": bus,
            "fulfillment": fulfillment,
            "dispatcher": dispatcher,
            "source": source,
            "ingestor": ingestor,
        }

    async def test_observe_confirm_finalize(self, wired: dict[str, Any]) -> None:
        poller: PaymentsPoller = wired["poller"]
        dispatcher: HookDispatcher = wired["dispatcher"]
        payments: PaymentStore = wired["payments"]
        orders: SqlOrderStore = wired["orders"]
        buyer_sub = wired["bus"].subscribe_buyer(BUYER, 100)

        # head 100: observed, order paid
        first = await poller.tick()
        await dispatcher.wait_idle()
        assert first.cursor_after == Cursor(100, 0, 0)
        assert first.confirmed == [] and first.finalized == []
        payment = await payments.get_payment(100, REF)
        assert payment is not None and payment.status is PaymentStatus.OBSERVED
        assert payment.total_amount_wei == 1000

        # head 103: confirmed, no fulfillment for a finalized-trigger line
        second = await poller.tick()
        await dispatcher.wait_idle()
        assert second.rows == 0
        assert second.confirmed == [REF]
        wired["fulfillment"].fulfill.assert_not_awaited()

        # head 106: finalized, order complete, fulfillment fired
        third = await poller.tick()
        await dispatcher.wait_idle()
        assert third.finalized == [REF]

        payment = await payments.get_payment(100, REF)
        assert payment is not None and payment.status is PaymentStatus.FINALIZED

        order = await orders.get_order("order-1")
        assert order is not None
        assert order.paid_at is not None
        assert order.confirmed_at is not None
        assert order.finalized_at is not None
        assert order.status == PAYMENT_COMPLETE

        events = [await buyer_sub.get(timeout=1) for _ in range(buyer_sub.pending())]
        assert [(e.old_status, e.new_status) for e in events] == [
            (None, PAYMENT_PROCESSING),
            (PAYMENT_PROCESSING, PAYMENT_COMPLETE),
        ]

        wired["fulfillment"].fulfill.assert_awaited_once()
        assert wired["fulfillment"].fulfill.await_args.kwargs["trigger"] == "finalized"
        (item,) = await orders.get_outbox_items("order-1")
        assert item.payload == {"code": "VOUCHER-1"}

    async def test_replayed_page_is_silent(self, wired: dict[str, Any]) -> None:
        poller: PaymentsPoller = wired["poller"]
        dispatcher: HookDispatcher = wired["dispatcher"]
        buyer_sub = wired["bus"].subscribe_buyer(BUYER, 100)

        await poller.tick()
        await dispatcher.wait_idle()

        # the same log delivered a second time
        await wired["ingestor"].ingest_page(QueryResult(columns=list(COLUMNS), rows=[_row(100)]))
        await dispatcher.wait_idle()

        assert buyer_sub.pending() == 1
        assert len(await wired["payments"].get_transfers(100, REF)) == 1
