"""Chat transport contract plus an in-memory implementation.

The engine only needs two things from the chat side: find out whether a
room still exists for the bot, and put a message into it. Room membership,
invitations and sync belong to the transport, not to the engine.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomHandle:
    """A resolved room the bot is a member of."""

    room_id: str
    is_direct: bool = False


@dataclass(frozen=True)
class SentMessage:
    room_id: str
    body: str
    html: str
    is_notice: bool


class TransportError(Exception):
    """The chat transport could not be reached or answered unexpectedly."""


class DispatchError(TransportError):
    """A single message could not be sent."""


class ChatTransport(ABC):
    """Abstract base for chat transports the engine delivers into."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier for logs (e.g. 'matrix', 'memory')."""

    @abstractmethod
    async def resolve_room(self, room_id: str) -> RoomHandle | None:
        """Return the room if the bot is still joined to it, else None.

        Raises:
            TransportError: if membership cannot be determined at all.
        """

    @abstractmethod
    async def send_message(self, room: RoomHandle, body: str, html: str) -> None:
        """Send one rendered message into ``room``.

        Returns once the transport acknowledged the message; delivery
        durability beyond that is the transport's concern.

        Raises:
            DispatchError: if the message was not accepted.
        """

    async def aclose(self) -> None:
        return None


class InMemoryTransport(ChatTransport):
    """Transport that records messages instead of sending them.

    Only rooms added up front or via add_room() resolve. Direct rooms
    receive regular messages, other rooms notices.
    """

    def __init__(
        self,
        rooms: Iterable[str] = (),
        direct_rooms: Iterable[str] = (),
    ) -> None:
        self._rooms = set(rooms)
        self._direct = set(direct_rooms)
        self.sent: list[SentMessage] = []

    @property
    def name(self) -> str:
        return "memory"

    def add_room(self, room_id: str, is_direct: bool = False) -> None:
        self._rooms.add(room_id)
        if is_direct:
            self._direct.add(room_id)

    def remove_room(self, room_id: str) -> None:
        self._rooms.discard(room_id)
        self._direct.discard(room_id)

    async def resolve_room(self, room_id: str) -> RoomHandle | None:
        if room_id in self._rooms or room_id in self._direct:
            return RoomHandle(room_id=room_id, is_direct=room_id in self._direct)
        return None

    async def send_message(self, room: RoomHandle, body: str, html: str) -> None:
        message = SentMessage(
            room_id=room.room_id,
            body=body,
            html=html,
            is_notice=not room.is_direct,
        )
        self.sent.append(message)
        logger.info("Message for %s:\n%s", room.room_id, body)

    def messages_for(self, room_id: str) -> list[SentMessage]:
        return [m for m in self.sent if m.room_id == room_id]
