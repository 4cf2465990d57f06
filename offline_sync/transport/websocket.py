"""
Bidirectional event transport.

Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
directions. The transport owns exactly one connection; reconnect policy
lives in ``EventChannel``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import aiohttp

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]
DisconnectHandler = Callable[[Exception | None], None]


class EventTransport(Protocol):
    """Connection-level interface consumed by EventChannel."""

    on_disconnect: DisconnectHandler | None

    async def connect(self, url: str, options: dict[str, Any]) -> None: ...

    async def emit(self, event: str, payload: Any) -> None: ...

    def on(self, event: str, handler: EventHandler) -> None: ...

    def off(self, event: str, handler: EventHandler) -> None: ...

    async def disconnect(self) -> None: ...

    @property
    def connected(self) -> bool: ...


class AiohttpWebSocketTransport:
    """WebSocket transport using aiohttp.

    ``options`` accepts ``headers`` (e.g. Authorization) and ``heartbeat``
    seconds.
    """

    def __init__(self) -> None:
        self.on_disconnect: DisconnectHandler | None = None
        self._handlers: dict[str, list[EventHandler]] = {}
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self, url: str, options: dict[str, Any]) -> None:
        self._closing = False
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(
            url,
            headers=options.get("headers") or {},
            heartbeat=options.get("heartbeat"),
        )
        self._reader_task = asyncio.create_task(self._read_loop(self._ws))
        logger.debug(f"WebSocket connected: {url}")

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        error: Exception | None = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception() or ConnectionError("WebSocket error")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e

        if not self._closing and self.on_disconnect is not None:
            self.on_disconnect(error)

    def _dispatch_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse event frame: {raw[:200]}")
            return

        event = frame.get("event") if isinstance(frame, dict) else None
        if not event:
            logger.warning(f"Event frame without name: {raw[:200]}")
            return

        for handler in list(self._handlers.get(event, [])):
            handler(frame.get("data"))

    async def emit(self, event: str, payload: Any) -> None:
        if not self.connected:
            raise ConnectionError("WebSocket is not connected")
        await self._ws.send_json({"event": event, "data": payload})

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            del self._handlers[event]

    async def disconnect(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._session is not None:
            await self._session.close()
            self._session = None
