"""Real-time fan-out of committed membership changes.

Delivery is best-effort: a recipient without a live connection is simply
skipped, and a failing socket is logged and dropped. Nothing here raises
into the caller, so a notification can never undo a committed mutation.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Optional

log = logging.getLogger("cojam.realtime")

USER_JOINED_SESSION = "user_joined_session"
USER_LEFT_SESSION = "user_left_session"
SESSION_STATUS_UPDATED = "session_status_updated"
PERFORMER_APPLICATION_RECEIVED = "performer_application_received"
PERFORMER_APPLICATION_CANCELED = "performer_application_canceled"
APPLICATION_RESPONDED = "application_responded"
SESSION_PARTICIPANT_APPROVED = "session_participant_approved"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def make_message(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "data": _jsonable(data)}


class Connection:
    """One accepted WebSocket, bound to the event loop that owns it."""

    def __init__(self, websocket, user_id: int, loop: asyncio.AbstractEventLoop) -> None:
        self.websocket = websocket
        self.user_id = user_id
        self.loop = loop

    def send(self, message: dict[str, Any]) -> None:
        future = asyncio.run_coroutine_threadsafe(self.websocket.send_json(message), self.loop)
        future.add_done_callback(self._log_failure)

    def _log_failure(self, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            log.warning("websocket send failed user_id=%s: %s", self.user_id, exc)

    def __repr__(self) -> str:
        return f"<Connection user_id={self.user_id} id={id(self):x}>"


class PresenceDirectory:
    """Who is connected, and which session rooms each connection listens to."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: dict[int, set[Connection]] = {}
        self._by_session: dict[int, set[Connection]] = {}
        self._rooms_of: dict[Connection, set[int]] = {}

    def register(self, conn: Connection) -> None:
        with self._lock:
            self._by_user.setdefault(conn.user_id, set()).add(conn)
            self._rooms_of.setdefault(conn, set())

    def unregister(self, conn: Connection) -> None:
        with self._lock:
            conns = self._by_user.get(conn.user_id)
            if conns is not None:
                conns.discard(conn)
                if not conns:
                    self._by_user.pop(conn.user_id, None)
            for session_id in self._rooms_of.pop(conn, set()):
                self._discard_from_room(session_id, conn)

    def subscribe(self, conn: Connection, session_id: int) -> None:
        with self._lock:
            self._by_session.setdefault(session_id, set()).add(conn)
            self._rooms_of.setdefault(conn, set()).add(session_id)

    def unsubscribe(self, conn: Connection, session_id: int) -> None:
        with self._lock:
            self._discard_from_room(session_id, conn)
            rooms = self._rooms_of.get(conn)
            if rooms is not None:
                rooms.discard(session_id)

    def unsubscribe_user(self, user_id: int, session_id: int) -> None:
        with self._lock:
            for conn in list(self._by_user.get(user_id, ())):
                self._discard_from_room(session_id, conn)
                self._rooms_of.get(conn, set()).discard(session_id)

    def drop_session(self, session_id: int) -> None:
        with self._lock:
            for conn in self._by_session.pop(session_id, set()):
                self._rooms_of.get(conn, set()).discard(session_id)

    def _discard_from_room(self, session_id: int, conn: Connection) -> None:
        room = self._by_session.get(session_id)
        if room is None:
            return
        room.discard(conn)
        if not room:
            self._by_session.pop(session_id, None)

    def connections_for_user(self, user_id: int) -> list[Connection]:
        with self._lock:
            return list(self._by_user.get(user_id, ()))

    def connections_in_session(self, session_id: int) -> list[Connection]:
        with self._lock:
            return list(self._by_session.get(session_id, ()))

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._by_user.get(user_id))


class EventGateway:
    def __init__(self, directory: Optional[PresenceDirectory] = None) -> None:
        self.directory = directory or PresenceDirectory()

    def send_to_user(self, user_id: int, event: str, data: dict[str, Any]) -> int:
        conns = self.directory.connections_for_user(user_id)
        if not conns:
            log.debug("notify skipped: user_id=%s not connected (event=%s)", user_id, event)
            return 0
        return self._deliver(conns, make_message(event, data))

    def broadcast(self, session_id: int, event: str, data: dict[str, Any]) -> int:
        conns = self.directory.connections_in_session(session_id)
        if not conns:
            return 0
        return self._deliver(conns, make_message(event, data))

    def user_left(self, session_id: int, user_id: int) -> None:
        self.directory.unsubscribe_user(user_id, session_id)

    def session_closed(self, session_id: int) -> None:
        self.directory.drop_session(session_id)

    def _deliver(self, conns: list[Connection], message: dict[str, Any]) -> int:
        delivered = 0
        for conn in conns:
            try:
                conn.send(message)
                delivered += 1
            except Exception:
                log.exception("delivery of %s to %r failed", message.get("event"), conn)
        return delivered
