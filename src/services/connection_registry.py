import uuid
from datetime import datetime, UTC
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from src.core.logger import logger


@dataclass
class PushConnection:
    connection_id: str
    user_id: str
    transport: str
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_event_at: Optional[datetime] = None
    events_sent: int = 0

    def touch(self) -> None:
        self.last_event_at = datetime.now(UTC)
        self.events_sent += 1


class ConnectionRegistry:
    def __init__(self):
        self._connections: Dict[str, PushConnection] = {}

    def register(self, user_id: str, transport: str) -> PushConnection:
        connection = PushConnection(
            connection_id=str(uuid.uuid4()),
            user_id=user_id,
            transport=transport,
        )
        self._connections[connection.connection_id] = connection
        logger.info(f"Push connection opened: {connection.connection_id} ({transport}, user={user_id})")
        return connection

    def get(self, connection_id: str) -> Optional[PushConnection]:
        return self._connections.get(connection_id)

    def release(self, connection_id: str) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        logger.info(
            f"Push connection closed: {connection_id} "
            f"(user={connection.user_id}, events={connection.events_sent})"
        )
        return True

    def for_user(self, user_id: str) -> List[PushConnection]:
        return [c for c in self._connections.values() if c.user_id == user_id]

    def get_active_connection_count(self) -> int:
        return len(self._connections)
