"""
Async Graph API client with throttling, retry, and mutation guarding.
Requests are issued one at a time by the caller; the client never fans out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
)
from ..safety.guardian import MutationGuard

logger = logging.getLogger("crosstenant_setup.graph")

RETRY_STATUSES = (429, 503, 504)


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Mutation-guarded requests (writes blocked in what-if runs)
      - Exponential backoff on 429/503/504 honouring Retry-After
      - Pagination with @odata.nextLink
      - GET/POST/PATCH/DELETE helpers returning parsed JSON
    """

    def __init__(
        self,
        access_token: str,
        guard: MutationGuard,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guard = guard
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint.lstrip('/')}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, body: Optional[dict] = None) -> dict:
        return await self.request("POST", endpoint, json_body=body)

    async def patch(self, endpoint: str, body: dict) -> dict:
        return await self.request("PATCH", endpoint, json_body=body)

    async def delete(self, endpoint: str) -> dict:
        return await self.request("DELETE", endpoint)

    async def get_all_pages(self, endpoint: str, params: Optional[dict] = None) -> list[dict]:
        """Fetch every page of a collection endpoint into a list."""
        items = []
        url: Optional[str] = endpoint
        pages = 0
        while url and pages < MAX_PAGES_PER_ENDPOINT:
            data = await self.request("GET", url, params=params)
            items.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            params = None  # nextLink carries the query
            pages += 1
        if url:
            logger.warning(f"Pagination cap reached ({MAX_PAGES_PER_ENDPOINT} pages) for {endpoint}")
        return items

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Validate against the guard, then execute with retry."""
        url = self._build_url(endpoint)
        self.guard.validate_request(method, url, json_body)
        return await self._execute_with_retry(method, url, params=params, json_body=json_body)

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(method, url, params=params, json_body=json_body)
                self._request_count += 1

                if response.status_code in RETRY_STATUSES and attempt < MAX_RETRIES:
                    self._throttle_count += 1
                    retry_after = float(response.headers.get("Retry-After", backoff))
                    wait_time = min(max(retry_after, backoff), MAX_BACKOFF_SECONDS)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {method} {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                if 200 <= response.status_code < 300:
                    if not response.content or not response.content.strip():
                        return {}
                    try:
                        return response.json()
                    except ValueError:
                        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
                        return {}

                raise GraphAPIError(response.status_code, _error_message(response), url)

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.warning(f"{type(e).__name__} on {method} {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(0, "retries exhausted", url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")
        return await self._client.request(method, url, params=params, json=json_body)

    def get_stats(self) -> dict:
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _error_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return body.get("error", {}).get("message", response.text[:200])
    return response.text[:200]
