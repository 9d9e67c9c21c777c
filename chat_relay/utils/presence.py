import logging
from typing import Dict, Optional


logger = logging.getLogger(__name__)


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class PresenceRegistry:
    """
    Maps an authenticated user to the sid of their last connection.

    Last-connect-wins: a newer connection overwrites the older one, there is
    no multi-device fan-out. Lookups may be stale; the per-user room is the
    fallback delivery path.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, str] = {}

    def register(self, user_id: str, sid: str) -> None:
        previous = self.active_connections.get(user_id)
        self.active_connections[user_id] = sid
        if previous and previous != sid:
            logger.debug("User %s moved from socket %s to %s", user_id, previous, sid)

    def lookup(self, user_id: str) -> Optional[str]:
        return self.active_connections.get(user_id)

    def unregister(self, user_id: str, sid: Optional[str] = None) -> None:
        current = self.active_connections.get(user_id)
        if current is None:
            return
        # an older socket closing must not evict the newer one
        if sid is not None and current != sid:
            return
        del self.active_connections[user_id]

    def is_online(self, user_id: str) -> bool:
        return user_id in self.active_connections

    def __len__(self) -> int:
        return len(self.active_connections)
