"""
Outbound HTTP for provider calls — timeout and retry policy.

Every provider call goes through ``ProviderHttp`` so that a slow provider
only stalls the request that triggered it:

  • one ``httpx.AsyncClient`` per operation, with a fixed timeout
  • idempotent requests (GET, revoke) retry on transport errors and 429/5xx
  • token-endpoint POSTs retry only when the connection was never made,
    since an authorization code is single-use at the provider
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from connectors.exceptions import ProviderApiError

logger = logging.getLogger(__name__)

_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout)


class ProviderHttp:
    """Async context manager around ``httpx.AsyncClient`` for one provider."""

    def __init__(
        self,
        provider_name: str,
        *,
        timeout: float = 15.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider_name = provider_name
        self._timeout = timeout
        self._max_retries = max(0, max_retries)
        self._backoff = backoff_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProviderHttp":
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, idempotent=True, **kwargs)

    async def post_form(
        self, url: str, data: dict, *, idempotent: bool = False, **kwargs: Any
    ) -> httpx.Response:
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
        return await self.request(
            "POST", url, idempotent=idempotent, data=data, headers=headers, **kwargs
        )

    async def request(
        self, method: str, url: str, *, idempotent: bool, **kwargs: Any
    ) -> httpx.Response:
        """Send with retries. Transport failures surface as ``ProviderApiError``."""
        if self._client is None:
            raise RuntimeError("ProviderHttp must be used as an async context manager")

        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                retriable = isinstance(exc, _NOT_SENT) or idempotent
                if not retriable or attempt >= self._max_retries:
                    raise ProviderApiError(
                        f"{self.provider_name} request failed: {type(exc).__name__}: {exc}",
                        provider_name=self.provider_name,
                    ) from exc
                logger.warning(
                    "%s %s to %s failed (%s), retrying",
                    method, url, self.provider_name, type(exc).__name__,
                )
            else:
                transient = resp.status_code == 429 or resp.status_code >= 500
                if not (idempotent and transient) or attempt >= self._max_retries:
                    return resp
                logger.warning(
                    "%s %s to %s returned %d, retrying",
                    method, url, self.provider_name, resp.status_code,
                )

            await asyncio.sleep(self._backoff * (2 ** attempt))
            attempt += 1
