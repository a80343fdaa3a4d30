# In-memory presence table: who is online and on which connection

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class OnlineUser:
    connection_id: str
    user_id: str

    def to_payload(self) -> Dict[str, str]:
        return {"connectionId": self.connection_id, "userId": self.user_id}


@dataclass(frozen=True)
class RegistryChange:
    """Roster snapshot returned by every registry mutation.

    ``changed`` tells whether the call actually altered the table and
    ``user_id`` names the user it touched; the snapshot itself is always the
    full current roster.
    """
    roster: Tuple[OnlineUser, ...]
    changed: bool = True
    reconnect: bool = False
    user_id: Optional[str] = None

    def to_payload(self) -> List[Dict[str, str]]:
        return [user.to_payload() for user in self.roster]


class PresenceRegistry:
    """user_id -> connection_id table, at most one live entry per user.

    Insertion order is kept (dicts preserve it) and a reconnect overwrites
    the connection in place without reordering. The last registration for a
    user wins; removing a connection that is no longer the mapped one for
    any user leaves the table untouched.
    """

    def __init__(self):
        self._users: Dict[str, str] = {}  # user_id -> connection_id
        self._lock = threading.Lock()

    def register(self, user_id: str, connection_id: str) -> Optional[RegistryChange]:
        if not isinstance(user_id, str) or not user_id.strip():
            return None
        with self._lock:
            # the old connection stays open; only the mapping moves
            reconnect = user_id in self._users
            # a connection re-registering under a new name gives up its old one
            for other, conn_id in list(self._users.items()):
                if conn_id == connection_id and other != user_id:
                    del self._users[other]
            self._users[user_id] = connection_id
            return RegistryChange(self._snapshot(), reconnect=reconnect, user_id=user_id)

    def remove(self, connection_id: str) -> RegistryChange:
        with self._lock:
            user_id = self._find(connection_id)
            if user_id is not None:
                del self._users[user_id]
            return RegistryChange(self._snapshot(), changed=user_id is not None, user_id=user_id)

    def connection_for(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._users.get(user_id)

    def roster(self) -> Tuple[OnlineUser, ...]:
        with self._lock:
            return self._snapshot()

    def _find(self, connection_id: str) -> Optional[str]:
        for user_id, conn_id in self._users.items():
            if conn_id == connection_id:
                return user_id
        return None

    def _snapshot(self) -> Tuple[OnlineUser, ...]:
        return tuple(OnlineUser(conn_id, user_id) for user_id, conn_id in self._users.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users
