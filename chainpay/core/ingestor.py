"""Map PaymentReceived rows to transfers and persist them.

Per page:
  1. Parse the row position (block, tx index, log index)
  2. Map the row to a TransferRecord; malformed rows are dropped for good
  3. Upsert the transfer, recompute the payment aggregate
  4. Hand the aggregate to the order matcher (observe step)

The caller advances the cursor to IngestStats.last_position once the
whole page has gone through without a database error.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from chainpay.core.cursor_store import Cursor
from chainpay.core.payment_store import PaymentStore, TransferRecord
from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.connectors.chain_source import QueryResult
    from chainpay.core.order_matcher import OrderMatcher

logger = get_logger("ingestor")

MAX_REFERENCE_LENGTH = 256
LEGACY_PREFIX = "pay_"
LEGACY_LENGTH = 36  # "pay_" + 32 hex chars

# NUMERIC(78,0) upper bound
MAX_AMOUNT_WEI = 10**78 - 1

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class InvalidRowError(ValueError):
    """Row can never become a valid transfer. Dropped, not retried."""


# ================================================================
# Cell coercion
# ================================================================


def _to_int(value: Any, column: str, bits: int = 64) -> int:
    if value is None:
        raise InvalidRowError(f"{column} is null")
    if isinstance(value, bool):
        raise InvalidRowError(f"{column} is not an integer: {value!r}")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError as e:
            raise InvalidRowError(f"{column} is not an integer: {value!r}") from e
    else:
        raise InvalidRowError(f"{column} is not an integer: {value!r}")

    limit = 1 << (bits - 1)
    if not -limit <= number < limit:
        raise InvalidRowError(f"{column} out of int{bits} range: {number}")
    return number


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_str_strict(value: Any, column: str) -> str:
    text = _to_str(value)
    if text is None:
        raise InvalidRowError(f"{column} is empty")
    return text


def parse_amount(value: Any) -> int | None:
    """Amount cell as a wei integer: int, decimal string or 0x hex string.

    Raises:
        InvalidRowError: Unparseable, negative or wider than NUMERIC(78,0).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRowError(f"amount is not numeric: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float) and value.is_integer():
        amount = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            amount = int(text[2:], 16) if text[:2].lower() == "0x" else int(text, 10)
        except ValueError as e:
            raise InvalidRowError(f"amount is not numeric: {value!r}") from e
    else:
        raise InvalidRowError(f"amount is not numeric: {value!r}")

    if amount < 0:
        raise InvalidRowError(f"negative amount: {amount}")
    if amount > MAX_AMOUNT_WEI:
        raise InvalidRowError(f"amount exceeds 78 digits: {amount}")
    return amount


# ================================================================
# Payment reference
# ================================================================


def decode_payment_reference(data: Any) -> str | None:
    """Decode the log payload into a UTF-8 string.

    0x-prefixed values are hex bytes, other strings are base64, raw bytes
    are decoded as-is. Returns None for an empty payload.

    Raises:
        InvalidRowError: Payload is not valid hex/base64 or not UTF-8.
    """
    if data is None:
        return None
    try:
        if isinstance(data, (bytes, bytearray)):
            raw = bytes(data)
        else:
            text = str(data).strip()
            if not text:
                return None
            if text[:2].lower() == "0x":
                raw = bytes.fromhex(text[2:])
            else:
                raw = base64.b64decode(text, validate=True)
        return raw.decode("utf-8")
    except (ValueError, binascii.Error, UnicodeDecodeError) as e:
        raise InvalidRowError(f"undecodable payload: {e}") from e


def normalize_payment_reference(raw: str | None) -> str | None:
    """Canonical form of a payment reference, or None if unusable.

    pay_<32 hex> references (any case) become pay_<UPPER HEX>; a pay_
    prefix with any other tail is rejected. Everything else is trimmed and
    sanity-checked only.
    """
    if raw is None:
        return None
    ref = raw.strip()
    if not ref or "\x00" in ref or len(ref) > MAX_REFERENCE_LENGTH:
        return None

    if ref[: len(LEGACY_PREFIX)].lower() == LEGACY_PREFIX:
        tail = ref[len(LEGACY_PREFIX) :]
        if len(ref) != LEGACY_LENGTH or not _HEX_RE.match(tail):
            return None
        return LEGACY_PREFIX + tail.upper()

    return ref


# ================================================================
# Row mapping
# ================================================================


def _columns(record: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in record.items()}


def row_position(record: Mapping[str, Any]) -> Cursor:
    """(block, tx index, log index) of a row.

    Raises:
        InvalidRowError: Any of the three is missing, not an integer, or
            outside its column range (int64 block, int32 indexes).
    """
    cols = _columns(record)
    return Cursor(
        _to_int(cols.get("blocknumber"), "blockNumber"),
        _to_int(cols.get("transactionindex"), "transactionIndex", bits=32),
        _to_int(cols.get("logindex"), "logIndex", bits=32),
    )


def row_to_transfer(
    record: Mapping[str, Any], chain_id: int, observed_at: datetime
) -> TransferRecord:
    """Map one PaymentReceived row (column lookup is case-insensitive).

    Raises:
        InvalidRowError: Missing fields, bad payload, negative amount or
            empty/invalid payment reference.
    """
    cols = _columns(record)
    position = row_position(record)

    reference = normalize_payment_reference(decode_payment_reference(cols.get("data")))
    if reference is None:
        raise InvalidRowError("empty or invalid payment reference")

    payer = _to_str(cols.get("payer"))
    return TransferRecord(
        chain_id=chain_id,
        tx_hash=_to_str_strict(cols.get("transactionhash"), "transactionHash").lower(),
        log_index=position.log_index,
        transaction_index=position.transaction_index,
        block_number=position.block_number,
        payment_reference=reference,
        gateway_address=_to_str_strict(cols.get("gateway"), "gateway").lower(),
        payer_address=payer.lower() if payer else None,
        amount_wei=parse_amount(cols.get("amount")),
        observed_at=observed_at,
    )


# ================================================================
# Ingestor
# ================================================================


@dataclass
class IngestStats:
    processed: int = 0
    dropped: int = 0
    skipped: int = 0
    last_position: Cursor | None = None

    def advance(self, position: Cursor) -> None:
        if self.last_position is None or position > self.last_position:
            self.last_position = position


class TransferIngestor:
    """Persist a page of rows and drive the observe step.

    Args:
        store: Transfer/payment persistence.
        chain_id: Chain the rows belong to.
        gateways: Lower-cased gateway allow-list; empty accepts all.
        matcher: Order matcher notified after each payment upsert.
        clock: Source of observed_at timestamps.
    """

    def __init__(
        self,
        store: PaymentStore,
        chain_id: int,
        gateways: frozenset[str] = frozenset(),
        matcher: OrderMatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._chain_id = chain_id
        self._gateways = gateways
        self._matcher = matcher
        self._clock = clock or (lambda: datetime.now(UTC))

    async def ingest_page(self, result: QueryResult) -> IngestStats:
        """Ingest every row of a page in order.

        Database errors propagate and abort the page; the caller must then
        leave the cursor where it was.
        """
        stats = IngestStats()
        for record in result.records():
            try:
                position = row_position(record)
            except InvalidRowError as e:
                stats.dropped += 1
                logger.warning("transfer_dropped", reason=str(e), position=None)
                continue

            try:
                transfer = row_to_transfer(record, self._chain_id, self._clock())
            except InvalidRowError as e:
                stats.dropped += 1
                stats.advance(position)
                logger.warning("transfer_dropped", reason=str(e), position=position.as_tuple())
                continue

            if self._gateways and transfer.gateway_address not in self._gateways:
                stats.skipped += 1
                stats.advance(position)
                continue

            await self.ingest_transfer(transfer)
            stats.processed += 1
            stats.advance(position)

        if stats.processed or stats.dropped:
            logger.info(
                "page_ingested",
                processed=stats.processed,
                dropped=stats.dropped,
                skipped=stats.skipped,
                last_position=stats.last_position.as_tuple() if stats.last_position else None,
            )
        return stats

    async def ingest_transfer(self, transfer: TransferRecord) -> None:
        await self._store.upsert_transfer(transfer)
        payment = await self._store.upsert_payment(transfer.chain_id, transfer.payment_reference)
        logger.debug(
            "transfer_ingested",
            payment_reference=transfer.payment_reference,
            tx_hash=transfer.tx_hash,
            log_index=transfer.log_index,
            block=transfer.block_number,
        )
        if payment is not None and self._matcher is not None:
            await self._matcher.on_observed(payment)
