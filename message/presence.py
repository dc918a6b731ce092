"""
Process-local record of which users currently hold a live chat connection.

A user is online while at least one of their connections is registered.
Each disconnect removes only its own connection, so a late disconnect from
an old socket cannot mark a user offline while a newer socket is still open.

The registry lives in this process only; with several server processes each
one sees just its own connections.
"""
import threading


class PresenceRegistry:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict = {}

    def register(self, user_id, connection_id: str) -> bool:
        """Record a connection. Returns True if the user just came online."""
        with self._lock:
            connections = self._connections.setdefault(user_id, set())
            connections.add(connection_id)
            return len(connections) == 1

    def unregister(self, user_id, connection_id: str | None = None) -> bool:
        """
        Drop a connection, or every connection of the user when
        ``connection_id`` is omitted. Returns True if the user just went
        offline.
        """
        with self._lock:
            connections = self._connections.get(user_id)
            if connections is None:
                return False
            if connection_id is not None:
                connections.discard(connection_id)
                if connections:
                    return False
            del self._connections[user_id]
            return True

    def is_online(self, user_id) -> bool:
        with self._lock:
            return user_id in self._connections

    def online_users(self) -> list:
        with self._lock:
            return list(self._connections)

    def online_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()


presence = PresenceRegistry()
