"""
HTTP helpers shared by channel and handover clients
"""
from typing import Optional

import httpx

from leadflow.core.exceptions import DeliveryError

DEFAULT_TIMEOUT_SECONDS = 10.0


def is_retryable_status(status_code: int) -> bool:
    """5xx, 408 and 429 are worth retrying; other 4xx will fail again."""
    return status_code >= 500 or status_code in (408, 429)


def raise_for_delivery(response: httpx.Response, target: str) -> None:
    """Raise DeliveryError for any non-2xx response."""
    if 200 <= response.status_code < 300:
        return
    raise DeliveryError(
        f"{target} returned HTTP {response.status_code}: {response.text[:200]}",
        status_code=response.status_code,
        retryable=is_retryable_status(response.status_code),
        details={"target": target},
    )


class OwnedClient:
    """
    Lazily created httpx.AsyncClient.
    An injected client belongs to the caller and is never closed here.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._client = client
        self._owned = client is None
        self._timeout = timeout

    def get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._owned and self._client is not None:
            await self._client.aclose()
            self._client = None
