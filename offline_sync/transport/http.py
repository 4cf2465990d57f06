"""
HTTP request function.

The sync layer only needs ``(method, url, headers, body, timeout) ->
Response``. Network failures and timeouts are raised as
``TransientNetworkError``; HTTP error statuses are returned, not raised,
so the caller decides how to classify them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp

from ..exceptions import TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass
class Response:
    """Status and decoded body of an HTTP response."""

    status: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class RequestFunction(Protocol):
    """Anything that can perform one HTTP exchange."""

    async def __call__(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> Response: ...


class AiohttpRequestFunction:
    """Request function backed by a shared ``aiohttp.ClientSession``.

    Relative URLs are joined onto ``base_url``. JSON bodies are encoded
    and JSON responses decoded; anything else is returned as text.
    """

    def __init__(self, base_url: str = "", default_headers: dict[str, str] | None = None):
        self.base_url = base_url.rstrip("/")
        self.default_headers = {"Content-Type": "application/json", **(default_headers or {})}
        self._session: aiohttp.ClientSession | None = None

    def _resolve(self, url: str) -> str:
        if url.startswith(("http://", "https://")) or not self.base_url:
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def __call__(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> Response:
        full_url = self._resolve(url)
        merged = {**self.default_headers, **headers}
        data = json.dumps(body) if body is not None else None

        try:
            async with self._get_session().request(
                method.upper(),
                full_url,
                headers=merged,
                data=data,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                text = await resp.text()
                return Response(
                    status=resp.status,
                    body=_decode_body(text, resp.content_type),
                    headers=dict(resp.headers),
                )
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"Request timed out after {timeout}s", {"url": full_url}, code="timeout"
            ) from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(
                f"Network error: {e}", {"url": full_url}, code=type(e).__name__
            ) from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None


def _decode_body(text: str, content_type: str) -> Any:
    if not text:
        return None
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse JSON response body: {text[:200]}")
    return text
