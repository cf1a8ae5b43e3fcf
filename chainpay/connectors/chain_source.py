"""PaymentReceived event source backed by a Circles JSON-RPC node.

Two calls:
  - circles_query: rows of CrcV2_PaymentGateway.PaymentReceived strictly after
    a cursor, ordered by (blockNumber, transactionIndex, logIndex) ascending
  - eth_blockNumber: current chain head as a hex quantity

Interface contract:
  - fetch_since(cursor, page_size) → QueryResult
  - head_height() → int
"""

from __future__ import annotations

import asyncio
import string
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from chainpay.connectors.query_filter import any_equals, tuple_greater_than
from chainpay.utils.logger import get_logger

if TYPE_CHECKING:
    from chainpay.config.settings import ChainPayConfig
    from chainpay.core.cursor_store import Cursor

logger = get_logger("chain_source")

QUERY_NAMESPACE = "CrcV2_PaymentGateway"
QUERY_TABLE = "PaymentReceived"
POSITION_COLUMNS = ("blockNumber", "transactionIndex", "logIndex")
GATEWAY_COLUMN = "gateway"

_INT64_MAX = 2**63 - 1


# ================================================================
# Error types
# ================================================================


class ChainSourceError(Exception):
    """Base error for event index calls."""


class ChainQueryError(ChainSourceError):
    """Transport failure, JSON-RPC error or malformed response."""


class HeadHeightError(ChainSourceError):
    """eth_blockNumber returned something that is not a usable block height."""


# ================================================================
# Data models
# ================================================================


@dataclass
class QueryResult:
    """Column names plus loosely typed row arrays."""

    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def records(self) -> list[dict[str, Any]]:
        """Rows as dicts keyed by column name."""
        return [dict(zip(self.columns, row)) for row in self.rows]


def parse_hex_quantity(value: str | None) -> int:
    """Parse an eth_blockNumber result as an unsigned integer.

    The value is parsed unsigned first and only then range-checked, so a
    quantity with the high bit set is reported as out of range instead of
    being read as negative.

    Raises:
        HeadHeightError: Empty, non-hex, or above the signed 64-bit range.
    """
    if value is None or not str(value).strip():
        raise HeadHeightError("eth_blockNumber returned empty result")
    digits = str(value).strip()
    if digits[:2].lower() == "0x":
        digits = digits[2:]
    if not digits:
        return 0
    if any(c not in string.hexdigits for c in digits):
        raise HeadHeightError(f"invalid hex block number: {value!r}")
    height = int(digits, 16)
    if height > _INT64_MAX:
        raise HeadHeightError(f"block number exceeds int64 range: {value!r}")
    return height


def build_query(
    cursor: Cursor,
    page_size: int,
    gateways: frozenset[str] | None = None,
) -> dict[str, Any]:
    """Build the circles_query request object for rows after cursor."""
    filters: list[dict[str, Any]] = []
    if cursor.block_number >= 0:
        filters.append(tuple_greater_than(POSITION_COLUMNS, cursor.as_tuple()).to_dict())

    gateway_filter = any_equals(GATEWAY_COLUMN, sorted(gateways or ()))
    if gateway_filter is not None:
        filters.append(gateway_filter.to_dict())

    return {
        "namespace": QUERY_NAMESPACE,
        "table": QUERY_TABLE,
        "columns": [],
        "filter": filters,
        "order": [{"column": c, "sortOrder": "ASC"} for c in POSITION_COLUMNS],
        "limit": page_size,
    }


# ================================================================
# Client
# ================================================================


class ChainEventSource:
    """Async JSON-RPC client for the payment gateway event index.

    Args:
        config: Application config (RPC URL, page size, gateway allow-list, timeout).
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        config: ChainPayConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._rpc_url = config.rpc_url
        self._page_size = config.page_size
        self._gateways = config.gateway_allow_list
        self._timeout_s = config.request_timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("chain_source_closed")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_since(self, cursor: Cursor, page_size: int | None = None) -> QueryResult:
        """Fetch up to page_size PaymentReceived rows strictly after cursor.

        Raises:
            ChainQueryError: On transport failure or malformed response.
        """
        query = build_query(cursor, page_size or self._page_size, self._gateways)
        result = await self._rpc("circles_query", [query])

        if result is None:
            return QueryResult()
        if not isinstance(result, dict):
            raise ChainQueryError("circles_query result is not an object")

        columns = result.get("columns") or []
        rows = result.get("rows") or []
        if not isinstance(columns, list) or not isinstance(rows, list):
            raise ChainQueryError("circles_query result has malformed columns/rows")
        for row in rows:
            if not isinstance(row, list) or len(row) != len(columns):
                raise ChainQueryError("circles_query row does not match column count")

        return QueryResult(columns=[str(c) for c in columns], rows=rows)

    async def head_height(self) -> int:
        """Current chain head via eth_blockNumber.

        Raises:
            ChainQueryError: On transport failure.
            HeadHeightError: If the result is not a valid unsigned height.
        """
        result = await self._rpc("eth_blockNumber", [])
        if not isinstance(result, str):
            raise HeadHeightError(f"eth_blockNumber returned {type(result).__name__}")
        return parse_hex_quantity(result)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        """POST a JSON-RPC request and return its result member."""
        if not self._rpc_url:
            raise ChainQueryError("RPC_URL is not configured")

        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        session = await self._get_session()

        try:
            async with session.post(self._rpc_url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise ChainQueryError(f"{method} HTTP {resp.status}: {text[:200]}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ChainQueryError(f"{method} failed: {e}") from e

        if not isinstance(data, dict):
            raise ChainQueryError(f"{method} response is not a JSON object")
        if data.get("error") is not None:
            raise ChainQueryError(f"{method} returned error: {data['error']}")
        return data.get("result")
