"""
Transport adapters.

Default aiohttp implementations of the request function and the
bidirectional event transport. Both can be swapped for anything that
satisfies the protocols.
"""

from .http import AiohttpRequestFunction, RequestFunction, Response
from .websocket import AiohttpWebSocketTransport, EventTransport

__all__ = [
    "Response",
    "RequestFunction",
    "AiohttpRequestFunction",
    "EventTransport",
    "AiohttpWebSocketTransport",
]
