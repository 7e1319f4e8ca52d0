"""Delivery: render items and hand them to the chat transport."""

from src.delivery.matrix import MatrixTransport
from src.delivery.rendering import RenderedMessage, render_item
from src.delivery.transport import (
    ChatTransport,
    DispatchError,
    InMemoryTransport,
    RoomHandle,
    TransportError,
)

__all__ = [
    "ChatTransport",
    "DispatchError",
    "InMemoryTransport",
    "MatrixTransport",
    "RenderedMessage",
    "RoomHandle",
    "TransportError",
    "render_item",
]
