import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Protocol, Set

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def global_room(user_id: int) -> str:
    return f"global:{user_id}"


class RealtimeHub:
    """Process-local presence map and room registry.

    A user is online while at least one of their connections is open.
    Every connection is subscribed to its ``user:<id>`` room on connect;
    other rooms are joined and left explicitly, and both are idempotent.
    """

    def __init__(self) -> None:
        self._online: DefaultDict[int, Set[Connection]] = defaultdict(set)
        self._rooms: DefaultDict[str, Set[Connection]] = defaultdict(set)
        self._conn_rooms: dict[Connection, Set[str]] = {}
        self._conn_user: dict[Connection, int] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: int, ws: Connection) -> None:
        async with self._lock:
            self._online[user_id].add(ws)
            self._conn_user[ws] = user_id
            self._conn_rooms.setdefault(ws, set())
            self._join_locked(ws, user_room(user_id))
        logger.debug("User %s connected", user_id)

    async def disconnect(self, ws: Connection) -> None:
        async with self._lock:
            self._drop_locked(ws)

    def _drop_locked(self, ws: Connection) -> None:
        user_id = self._conn_user.pop(ws, None)
        for room in self._conn_rooms.pop(ws, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(ws)
                if not members:
                    self._rooms.pop(room, None)
        if user_id is not None:
            conns = self._online.get(user_id)
            if conns is not None:
                conns.discard(ws)
                if not conns:
                    self._online.pop(user_id, None)

    def _join_locked(self, ws: Connection, room: str) -> None:
        self._rooms[room].add(ws)
        self._conn_rooms.setdefault(ws, set()).add(room)

    async def join(self, ws: Connection, room: str) -> None:
        async with self._lock:
            if ws in self._conn_user:
                self._join_locked(ws, room)

    async def leave(self, ws: Connection, room: str) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(ws)
                if not members:
                    self._rooms.pop(room, None)
            rooms = self._conn_rooms.get(ws)
            if rooms is not None:
                rooms.discard(room)

    def user_of(self, ws: Connection) -> int | None:
        return self._conn_user.get(ws)

    def is_online(self, user_id: int) -> bool:
        return bool(self._online.get(user_id))

    def online_users(self) -> set[int]:
        return {uid for uid, conns in self._online.items() if conns}

    def room_users(self, room: str) -> set[int]:
        return {
            self._conn_user[ws] for ws in self._rooms.get(room, set()) if ws in self._conn_user
        }

    def is_in_room(self, user_id: int, room: str) -> bool:
        return user_id in self.room_users(room)

    async def emit(self, room: str, event: str, data: dict[str, Any]) -> int:
        """Send one event to every connection in ``room``; returns the count."""
        message = json.dumps({"event": event, "data": data}, ensure_ascii=False, default=str)
        async with self._lock:
            conns = list(self._rooms.get(room, set()))
        dead: list[Connection] = []
        sent = 0
        for ws in conns:
            try:
                await ws.send_text(message)
                sent += 1
            except Exception:
                logger.warning("Dropping dead connection in %s", room)
                dead.append(ws)
        if dead:
            async with self._lock:
                for ws in dead:
                    self._drop_locked(ws)
        return sent

    async def send_to(self, ws: Connection, event: str, data: dict[str, Any]) -> None:
        await ws.send_text(
            json.dumps({"event": event, "data": data}, ensure_ascii=False, default=str)
        )


hub = RealtimeHub()
