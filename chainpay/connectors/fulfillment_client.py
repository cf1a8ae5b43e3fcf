"""HTTP trigger for seller-side order fulfillment.

POSTs one JSON request per order line to FULFILLMENT_URL and returns
the response body, which the caller stores in the order outbox.
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from chainpay.utils.logger import get_logger

logger = get_logger("fulfillment_client")


class FulfillmentError(Exception):
    """Fulfillment endpoint unreachable or answered with a non-2xx status."""


class FulfillmentClient:
    """Async client for the fulfillment endpoint.

    Args:
        url: Endpoint URL. Empty disables the client.
        timeout_s: Total timeout per request.
        session: Optional shared aiohttp session.
    """

    def __init__(
        self,
        url: str,
        timeout_s: float = 20.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def fulfill(
        self,
        order_id: str,
        payment_reference: str,
        trigger: str,
        seller: str,
        sku: str,
    ) -> dict[str, Any]:
        """Request fulfillment of one order line.

        Returns:
            The JSON response object. Non-object bodies are wrapped as
            {"response": body}; an empty body yields {}.

        Raises:
            FulfillmentError: Disabled, transport failure or non-2xx status.
        """
        if not self._url:
            raise FulfillmentError("FULFILLMENT_URL is not configured")

        body = {
            "orderId": order_id,
            "paymentReference": payment_reference,
            "trigger": trigger,
            "seller": seller,
            "sku": sku,
        }
        session = await self._get_session()
        try:
            async with session.post(self._url, json=body) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise FulfillmentError(f"fulfillment HTTP {resp.status}: {text[:200]}")
                data = await resp.json(content_type=None) if text.strip() else {}
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise FulfillmentError(f"fulfillment request failed: {e}") from e

        logger.info("fulfillment_triggered", order_id=order_id, trigger=trigger, seller=seller, sku=sku)
        return data if isinstance(data, dict) else {"response": data}
