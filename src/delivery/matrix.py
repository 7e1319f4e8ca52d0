"""Matrix client-server API transport.

Speaks just enough of the Matrix API to deliver notifications with an
existing access token:

- GET  /_matrix/client/v3/joined_rooms
- GET  /_matrix/client/v3/account/whoami
- GET  /_matrix/client/v3/user/{user}/account_data/m.direct
- PUT  /_matrix/client/v3/rooms/{room}/send/m.room.message/{txn}

Login, sync, invitations and leaving empty rooms are handled by whatever
runs the bot account; this transport only reads membership and sends.
"""

import logging
import time
import uuid
from urllib.parse import quote

from src.clients.http_client import HTTPClient, HTTPClientError
from src.delivery.transport import (
    ChatTransport,
    DispatchError,
    RoomHandle,
    TransportError,
)

logger = logging.getLogger(__name__)

_CLIENT_API = "/_matrix/client/v3"


class MatrixTransport(ChatTransport):
    """Deliver messages into Matrix rooms the bot account has joined.

    Joined and direct room sets are cached for ``membership_ttl_seconds`` so
    a poll cycle over many subscriptions does not re-read membership for
    every one of them.
    """

    def __init__(
        self,
        homeserver: str,
        access_token: str,
        user_id: str | None = None,
        timeout: float = 10.0,
        membership_ttl_seconds: float = 30.0,
        http: HTTPClient | None = None,
    ) -> None:
        self._base_url = homeserver.rstrip("/") + _CLIENT_API
        self._access_token = access_token
        self._user_id = user_id
        self._http = http or HTTPClient(timeout=timeout)
        self._ttl = membership_ttl_seconds

        self._joined: set[str] | None = None
        self._direct: set[str] = set()
        self._cached_at: float = 0.0

    @property
    def name(self) -> str:
        return "matrix"

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _whoami(self) -> str:
        if self._user_id is None:
            response = await self._http.get(
                f"{self._base_url}/account/whoami", headers=self._auth_headers
            )
            self._user_id = response.json()["user_id"]
        return self._user_id

    async def _direct_rooms(self) -> set[str]:
        user_id = await self._whoami()
        try:
            response = await self._http.get(
                f"{self._base_url}/user/{quote(user_id, safe='')}/account_data/m.direct",
                headers=self._auth_headers,
            )
        except HTTPClientError as e:
            if e.status_code == 404:
                return set()
            raise
        return {
            room_id
            for rooms in response.json().values()
            for room_id in rooms
        }

    async def _refresh_membership(self) -> None:
        now = time.monotonic()
        if self._joined is not None and (now - self._cached_at) < self._ttl:
            return

        try:
            response = await self._http.get(
                f"{self._base_url}/joined_rooms", headers=self._auth_headers
            )
            joined = set(response.json().get("joined_rooms", []))
            direct = await self._direct_rooms()
        except (HTTPClientError, ValueError, KeyError) as e:
            raise TransportError(f"Matrix membership lookup failed: {e}") from e

        self._joined = joined
        self._direct = direct & joined
        self._cached_at = now
        logger.debug(
            f"Matrix membership refreshed: {len(joined)} joined, {len(self._direct)} direct"
        )

    async def resolve_room(self, room_id: str) -> RoomHandle | None:
        await self._refresh_membership()
        if room_id not in self._joined:
            return None
        return RoomHandle(room_id=room_id, is_direct=room_id in self._direct)

    async def send_message(self, room: RoomHandle, body: str, html: str) -> None:
        content = {
            # Notices keep other bots from reacting in group rooms.
            "msgtype": "m.text" if room.is_direct else "m.notice",
            "body": body,
            "format": "org.matrix.custom.html",
            "formatted_body": html,
        }
        txn_id = uuid.uuid4().hex
        url = (
            f"{self._base_url}/rooms/{quote(room.room_id, safe='')}"
            f"/send/m.room.message/{txn_id}"
        )
        try:
            await self._http.put(url, json_body=content, headers=self._auth_headers)
        except HTTPClientError as e:
            raise DispatchError(
                f"Sending to {room.room_id} failed: {e}"
            ) from e

    async def aclose(self) -> None:
        await self._http.aclose()
