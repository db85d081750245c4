"""
Fulfillment dispatcher collaborator: the order processing API that places the
purchase with the retailer.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from core.config import settings

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    success: bool
    external_reference: Optional[str] = None
    request_id: Optional[str] = None
    error: Optional[str] = None


class FulfillmentDispatcher(Protocol):
    async def submit(self, order_id: str) -> DispatchResult:
        ...

    async def cancel(self, reference: str) -> DispatchResult:
        ...


class HttpFulfillmentDispatcher:
    """
    Talks to the order processing API over HTTP.

    Network errors, timeouts and non-2xx answers are returned as unsuccessful
    DispatchResults rather than raised, so callers can route them to the
    retry scheduler.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.FULFILLMENT_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.FULFILLMENT_API_KEY
        self.timeout = timeout if timeout is not None else settings.FULFILLMENT_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            auth=(self.api_key, "") if self.api_key else None,
            transport=self.transport,
        )

    async def submit(self, order_id: str) -> DispatchResult:
        try:
            async with self._client() as client:
                response = await client.post("/orders", json={"order_id": str(order_id)})
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Fulfillment API error for order {order_id}: {e.response.status_code} - {e.response.text}")
            return DispatchResult(success=False, error=f"HTTP {e.response.status_code}: {e.response.text[:200]}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Fulfillment API request failed for order {order_id}: {e}")
            return DispatchResult(success=False, error=str(e) or type(e).__name__)

        if not body.get("success", False):
            return DispatchResult(
                success=False,
                request_id=body.get("request_id"),
                error=body.get("error") or "Fulfillment API rejected the order",
            )
        return DispatchResult(
            success=True,
            external_reference=body.get("order_id"),
            request_id=body.get("request_id"),
        )

    async def cancel(self, reference: str) -> DispatchResult:
        try:
            async with self._client() as client:
                response = await client.post(f"/orders/{reference}/cancel")
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Fulfillment cancel for {reference} returned {e.response.status_code}")
            return DispatchResult(success=False, request_id=reference, error=f"HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Fulfillment cancel for {reference} failed: {e}")
            return DispatchResult(success=False, request_id=reference, error=str(e) or type(e).__name__)
        return DispatchResult(success=True, request_id=reference)
