"""
Connection registry for live trading.

WHAT: Map an authenticated user id to their single live connection
WHY: The engine addresses participants by user id, not by socket
HOW: Plain dict, last-write-wins on register
"""

from typing import Any, Dict, List, Optional, Protocol

from ..models.live_trade import Participant
from ..utils.logger import get_logger

logger = get_logger(__name__)


class JSONTransport(Protocol):
    """Anything that can push a JSON payload (Starlette WebSocket, test fakes)."""

    async def send_json(self, data: Any) -> None: ...


class ClientConnection:
    """A user's live connection with the identity attached at handshake."""

    def __init__(self, user_id: int, username: str, transport: JSONTransport):
        self.user_id = user_id
        self.username = username
        self.transport = transport

    @property
    def participant(self) -> Participant:
        return Participant(user_id=self.user_id, username=self.username)

    async def send(self, payload: Dict[str, Any]):
        await self.transport.send_json(payload)

    def __repr__(self):
        return f"<ClientConnection(user_id={self.user_id}, username={self.username})>"


class ConnectionRegistry:
    """
    Registry of live connections, one per user.

    Registering a second connection for a user replaces the first; the
    displaced connection is not closed here.
    """

    def __init__(self):
        self._connections: Dict[int, ClientConnection] = {}

    def register(self, user_id: int, connection: ClientConnection):
        previous = self._connections.get(user_id)
        self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            logger.info(f"Replaced live connection for user {user_id}")
        else:
            logger.info(f"User {user_id} connected to live trade")

    def unregister(self, user_id: int, connection: Optional[ClientConnection] = None) -> bool:
        """
        Drop the user's mapping.

        Args:
            user_id: User to remove
            connection: If given, only remove when this exact connection is registered

        Returns:
            True if a mapping was removed
        """
        current = self._connections.get(user_id)
        if current is None:
            return False
        if connection is not None and current is not connection:
            logger.debug(f"Ignoring unregister of displaced connection for user {user_id}")
            return False
        del self._connections[user_id]
        logger.info(f"User {user_id} disconnected from live trade")
        return True

    def resolve(self, user_id: int) -> Optional[ClientConnection]:
        return self._connections.get(user_id)

    def is_online(self, user_id: int) -> bool:
        return user_id in self._connections

    def online_users(self) -> List[int]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)
