"""HTTP transport for the dashboard API, built on httpx."""

from __future__ import annotations

import time
from collections.abc import Callable
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from tagsync.errors import NetworkError, RateLimitError, ServerError

TokenProvider = Callable[[], str | None]

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP date) to milliseconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0, int(when.timestamp() * 1000 - time.time() * 1000))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "Request failed")
    return "Request failed"


class HttpTransport:
    """Talks to the dashboard REST API and unwraps its ``{"data": ...}`` envelope.

    Failures surface as the engine's error types, so endpoint and mutation
    definitions can pass them straight through.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | TokenProvider | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    def _auth_headers(self) -> dict[str, str]:
        token = self._token() if callable(self._token) else self._token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the ``data`` field of the response body.

        Raises:
            NetworkError: connection failure or timeout.
            RateLimitError: HTTP 429.
            ServerError: any other non-2xx status.
        """
        headers = self._auth_headers()
        if method.upper() == "GET":
            headers.update(_NO_CACHE_HEADERS)
        try:
            response = await self._client.request(
                method, path, json=json, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path}: {e}") from e

        if response.status_code == 429:
            raise RateLimitError(
                _error_message(response),
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if not response.is_success:
            raise ServerError(response.status_code, _error_message(response))
        if not response.content:
            return None
        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def patch(self, path: str, json: Any = None) -> Any:
        return await self.request("PATCH", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


__all__ = ["HttpTransport", "parse_retry_after"]
