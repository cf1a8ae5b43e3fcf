"""Tests for row mapping, reference decoding and page ingestion."""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainpay.connectors.chain_source import QueryResult
from chainpay.core.cursor_store import Cursor
from chainpay.core.ingestor import (
    InvalidRowError,
    TransferIngestor,
    decode_payment_reference,
    normalize_payment_reference,
    parse_amount,
    row_to_transfer,
)
from chainpay.core.payment_store import PaymentStore

REF = "pay_ABCDEF0123456789ABCDEF0123456789"
GATEWAY = "0x1111111111111111111111111111111111111111"
OTHER_GATEWAY = "0x9999999999999999999999999999999999999999"
PAYER = "0x2222222222222222222222222222222222222222"
NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

COLUMNS = [
    "blockNumber",
    "timestamp",
    "transactionIndex",
    "logIndex",
    "transactionHash",
    "gateway",
    "payer",
    "amount",
    "data",
]


def _hex(text: str) -> str:
    return "0x" + text.encode("utf-8").hex()


def _row(
    block: Any = 100,
    tx_index: Any = 0,
    log_index: Any = 0,
    tx_hash: str = "0xaaa",
    gateway: str = GATEWAY,
    payer: str | None = PAYER,
    amount: Any = "1000",
    data: Any = None,
) -> list[Any]:
    return [
        block,
        1700000000,
        tx_index,
        log_index,
        tx_hash,
        gateway,
        payer,
        amount,
        _hex(REF) if data is None else data,
    ]


def _record(**kwargs: Any) -> dict[str, Any]:
    return dict(zip(COLUMNS, _row(**kwargs)))


def _page(*rows: list[Any]) -> QueryResult:
    return QueryResult(columns=list(COLUMNS), rows=list(rows))


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> PaymentStore:
    return PaymentStore(session_factory)


class TestDecodePaymentReference:
    def test_hex(self) -> None:
        assert decode_payment_reference(_hex("order-42")) == "order-42"

    def test_hex_uppercase_prefix(self) -> None:
        assert decode_payment_reference("0X" + "abc".encode().hex()) == "abc"

    def test_base64(self) -> None:
        assert decode_payment_reference(base64.b64encode(b"order-42").decode()) == "order-42"

    def test_bytes(self) -> None:
        assert decode_payment_reference(b"order-42") == "order-42"

    def test_empty(self) -> None:
        assert decode_payment_reference(None) is None
        assert decode_payment_reference("") is None

    @pytest.mark.parametrize("value", ["0xzz", "not base64!!", "0xff"])
    def test_undecodable(self, value: str) -> None:
        with pytest.raises(InvalidRowError):
            decode_payment_reference(value)


class TestNormalizePaymentReference:
    def test_legacy_uppercased(self) -> None:
        assert normalize_payment_reference("PAY_abcdef0123456789abcdef0123456789") == REF

    def test_legacy_trimmed(self) -> None:
        assert normalize_payment_reference(f"  {REF}\n") == REF

    def test_legacy_wrong_length_rejected(self) -> None:
        assert normalize_payment_reference("pay_abc") is None

    def test_legacy_non_hex_rejected(self) -> None:
        assert normalize_payment_reference("pay_" + "g" * 32) is None

    def test_other_references_pass_through(self) -> None:
        assert normalize_payment_reference("  Order-42 ") == "Order-42"

    def test_nul_rejected(self) -> None:
        assert normalize_payment_reference("abc\x00def") is None

    def test_length_limit(self) -> None:
        assert normalize_payment_reference("x" * 256) == "x" * 256
        assert normalize_payment_reference("x" * 257) is None

    def test_blank(self) -> None:
        assert normalize_payment_reference("   ") is None
        assert normalize_payment_reference(None) is None


class TestParseAmount:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(1000, 1000), ("1000", 1000), ("0x3e8", 1000), (None, None), ("", None)],
    )
    def test_formats(self, value: Any, expected: int | None) -> None:
        assert parse_amount(value) == expected

    def test_beyond_int64(self) -> None:
        assert parse_amount(str(2**255)) == 2**255

    def test_numeric_78_bound(self) -> None:
        assert parse_amount(str(10**78 - 1)) == 10**78 - 1
        with pytest.raises(InvalidRowError, match="78 digits"):
            parse_amount(10**78)

    @pytest.mark.parametrize("value", [-1, "-5", "abc", True])
    def test_invalid(self, value: Any) -> None:
        with pytest.raises(InvalidRowError):
            parse_amount(value)


class TestRowToTransfer:
    def test_maps_fields(self) -> None:
        transfer = row_to_transfer(_record(block="100", tx_index=2, log_index=7), 100, NOW)

        assert transfer.block_number == 100
        assert transfer.transaction_index == 2
        assert transfer.log_index == 7
        assert transfer.payment_reference == REF
        assert transfer.gateway_address == GATEWAY
        assert transfer.payer_address == PAYER
        assert transfer.amount_wei == 1000
        assert transfer.observed_at == NOW
        assert transfer.position == Cursor(100, 2, 7)

    def test_case_insensitive_columns(self) -> None:
        record = {k.upper(): v for k, v in _record().items()}
        transfer = row_to_transfer(record, 100, NOW)
        assert transfer.payment_reference == REF

    def test_missing_payer_allowed(self) -> None:
        transfer = row_to_transfer(_record(payer=None), 100, NOW)
        assert transfer.payer_address is None

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(InvalidRowError):
            row_to_transfer(_record(amount="-1"), 100, NOW)

    def test_empty_reference_rejected(self) -> None:
        with pytest.raises(InvalidRowError):
            row_to_transfer(_record(data=_hex("   ")), 100, NOW)

    def test_missing_tx_hash_rejected(self) -> None:
        with pytest.raises(InvalidRowError):
            row_to_transfer(_record(tx_hash=""), 100, NOW)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"block": 2**63},
            {"block": str(-(2**63) - 1)},
            {"tx_index": 2**31},
            {"log_index": 2**64},
            {"log_index": str(-(2**31) - 1)},
        ],
    )
    def test_position_out_of_column_range(self, overrides: dict[str, Any]) -> None:
        with pytest.raises(InvalidRowError, match="range"):
            row_to_transfer(_record(**overrides), 100, NOW)

    def test_position_at_column_limits(self) -> None:
        transfer = row_to_transfer(_record(block=2**63 - 1, tx_index=2**31 - 1, log_index=2**31 - 1), 100, NOW)
        assert transfer.position == Cursor(2**63 - 1, 2**31 - 1, 2**31 - 1)


class TestIngestPage:
    async def test_ingests_and_tracks_last_position(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)
        page = _page(
            _row(block=100, log_index=0, tx_hash="0xa"),
            _row(block=100, log_index=1, tx_hash="0xa"),
        )

        stats = await ingestor.ingest_page(page)

        assert stats.processed == 2
        assert stats.last_position == Cursor(100, 0, 1)
        payment = await store.get_payment(100, REF)
        assert payment is not None
        assert payment.total_amount_wei == 2000

    async def test_reingestion_is_idempotent(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)
        page = _page(_row(block=100, tx_hash="0xa"))

        await ingestor.ingest_page(page)
        await ingestor.ingest_page(page)

        assert len(await store.get_transfers(100, REF)) == 1
        payment = await store.get_payment(100, REF)
        assert payment is not None
        assert payment.total_amount_wei == 1000

    async def test_aggregates_across_blocks(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)
        await ingestor.ingest_page(
            _page(_row(block=5, amount=10, tx_hash="0xa"), _row(block=7, amount=15, tx_hash="0xb"))
        )

        payment = await store.get_payment(100, REF)
        assert payment is not None
        assert payment.total_amount_wei == 25
        assert payment.first_block_number == 5
        assert payment.last_block_number == 7

    async def test_malformed_rows_dropped_but_advance_position(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)
        page = _page(
            _row(block=100, log_index=0, tx_hash="0xa"),
            _row(block=100, log_index=1, tx_hash="0xb", amount="-5"),
            _row(block=101, log_index=0, tx_hash="0xc", data="0xzz"),
        )

        stats = await ingestor.ingest_page(page)

        assert stats.processed == 1
        assert stats.dropped == 2
        assert stats.last_position == Cursor(101, 0, 0)

    async def test_unparseable_position_does_not_advance(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)

        stats = await ingestor.ingest_page(_page(_row(block=None)))

        assert stats.dropped == 1
        assert stats.last_position is None

    async def test_out_of_range_row_does_not_block_page(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, clock=lambda: NOW)
        page = _page(
            _row(block=100, log_index=2**64, tx_hash="0xa"),
            _row(block=100, log_index=1, tx_hash="0xb", amount=10**78),
            _row(block=101, log_index=0, tx_hash="0xc"),
        )

        stats = await ingestor.ingest_page(page)

        assert stats.dropped == 2
        assert stats.processed == 1
        assert stats.last_position == Cursor(101, 0, 0)
        transfers = await store.get_transfers(100, REF)
        assert [t.tx_hash for t in transfers] == ["0xc"]

    async def test_gateway_allow_list(self, store: PaymentStore) -> None:
        ingestor = TransferIngestor(store, chain_id=100, gateways=frozenset({GATEWAY}), clock=lambda: NOW)
        page = _page(
            _row(block=100, tx_hash="0xa", gateway=OTHER_GATEWAY),
            _row(block=101, tx_hash="0xb", gateway=GATEWAY.upper().replace("0X", "0x")),
        )

        stats = await ingestor.ingest_page(page)

        assert stats.processed == 1
        assert stats.skipped == 1
        assert stats.last_position == Cursor(101, 0, 0)

    async def test_matcher_receives_aggregate(self, store: PaymentStore) -> None:
        matcher = MagicMock()
        matcher.on_observed = AsyncMock(return_value=True)
        ingestor = TransferIngestor(store, chain_id=100, matcher=matcher, clock=lambda: NOW)

        await ingestor.ingest_page(_page(_row(block=100, tx_hash="0xa")))

        matcher.on_observed.assert_awaited_once()
        payment = matcher.on_observed.await_args.args[0]
        assert payment.payment_reference == REF
        assert payment.total_amount_wei == 1000

    async def test_database_error_propagates(self) -> None:
        from sqlalchemy.exc import OperationalError

        failing = MagicMock()
        failing.upsert_transfer = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        ingestor = TransferIngestor(failing, chain_id=100, clock=lambda: NOW)

        with pytest.raises(OperationalError):
            await ingestor.ingest_page(_page(_row()))
