"""Live connection registry.

Binds transport connections to authenticated users. A connection only enters
the registry after its access token verifies; it leaves on disconnect, which
is the only removal path.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import logging
from typing import Any, Protocol
import uuid

from zenchat.errors import AuthFailureError, ChatError
from zenchat.services.tokens import TokenService

logger = logging.getLogger(__name__)

PresenceListener = Callable[[str, bool], Awaitable[None]]


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class Connection(Protocol):
    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


@dataclass(eq=False)
class Session:
    """Runtime binding between one live connection and one user.

    Outbound events are queued on ``outbox`` and drained by the transport's
    writer task; ``None`` tells the writer to stop.
    """

    connection_id: str
    user_id: str
    role: str
    outbox: asyncio.Queue
    connection: Connection | None = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    joined_conversation_ids: set[str] = field(default_factory=set)
    state: ConnectionState = ConnectionState.AUTHENTICATED

    def deliver(self, event: dict[str, Any]) -> bool:
        """Queue an event without blocking. False if the session is gone or full."""
        if self.state is not ConnectionState.AUTHENTICATED:
            return False
        try:
            self.outbox.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True


class SessionRegistry:
    """Maps connection ids to sessions and users to their connection ids.

    Both maps change together under one lock, so a user's connection set
    never loses an entry to a concurrent connect/disconnect. Presence is
    derived from the reverse map: online iff the user has a connection.
    """

    def __init__(self, tokens: TokenService, outbox_size: int = 1000) -> None:
        self._tokens = tokens
        self._outbox_size = outbox_size
        self._sessions: dict[str, Session] = {}
        self._user_connections: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._presence_listeners: list[PresenceListener] = []

    def add_presence_listener(self, listener: PresenceListener) -> None:
        self._presence_listeners.append(listener)

    async def connect(
        self,
        access_token: str | None,
        connection: Connection | None = None,
        connection_id: str | None = None,
    ) -> Session:
        """Authenticate a handshake token and register the connection.

        Raises:
            AuthFailureError: If the token is absent or fails verification;
                nothing is registered in that case.
        """
        if not access_token:
            raise AuthFailureError("Access token required")
        try:
            claims = self._tokens.verify_access(access_token)
        except ChatError as exc:
            logger.info("Rejected connection: %s", exc.kind)
            raise AuthFailureError(exc.message) from exc

        session = Session(
            connection_id=connection_id or str(uuid.uuid4()),
            user_id=claims.user_id,
            role=claims.role,
            outbox=asyncio.Queue(maxsize=self._outbox_size),
            connection=connection,
        )

        async with self._lock:
            if session.connection_id in self._sessions:
                raise AuthFailureError("Connection already registered")
            connections = self._user_connections.setdefault(session.user_id, set())
            came_online = not connections
            connections.add(session.connection_id)
            self._sessions[session.connection_id] = session
            total = len(self._sessions)

        logger.info("Session %s registered for user %s (%d active)", session.connection_id, session.user_id, total)
        if came_online:
            await self._notify_presence(session.user_id, True)
        return session

    async def disconnect(
        self,
        connection_id: str,
        *,
        close: bool = False,
        code: int = 1000,
        reason: str | None = None,
    ) -> bool:
        """Remove a connection. Idempotent; returns False if it was not registered.

        With ``close=True`` the transport is closed as well (forced disconnect).
        """
        async with self._lock:
            session = self._sessions.pop(connection_id, None)
            if session is None:
                return False
            session.state = ConnectionState.DISCONNECTED
            connections = self._user_connections.get(session.user_id)
            went_offline = False
            if connections is not None:
                connections.discard(connection_id)
                if not connections:
                    del self._user_connections[session.user_id]
                    went_offline = True
            total = len(self._sessions)

        session.joined_conversation_ids.clear()
        self._stop_writer(session)
        logger.info("Session %s removed for user %s (%d active)", connection_id, session.user_id, total)

        if close and session.connection is not None:
            try:
                await session.connection.close(code=code, reason=reason)
            except (RuntimeError, OSError) as exc:
                logger.debug("Transport for %s already closed: %s", connection_id, exc)

        if went_offline:
            await self._notify_presence(session.user_id, False)
        return True

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    def sessions_for_user(self, user_id: str) -> list[Session]:
        return [self._sessions[cid] for cid in self._user_connections.get(user_id, ()) if cid in self._sessions]

    def sessions_for_users(self, user_ids) -> list[Session]:
        sessions: list[Session] = []
        for user_id in user_ids:
            sessions.extend(self.sessions_for_user(user_id))
        return sessions

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_connections.get(user_id))

    def online_users(self, user_ids=None) -> set[str]:
        if user_ids is None:
            return set(self._user_connections)
        return {user_id for user_id in user_ids if self.is_online(user_id)}

    def session_count(self) -> int:
        return len(self._sessions)

    async def close_all(self, code: int = 1001) -> None:
        """Disconnect every session, e.g. on shutdown."""
        for connection_id in list(self._sessions):
            await self.disconnect(connection_id, close=True, code=code, reason="server shutdown")

    def _stop_writer(self, session: Session) -> None:
        try:
            session.outbox.put_nowait(None)
        except asyncio.QueueFull:
            # Writer is behind; drop what it has not sent so it sees the stop marker.
            while not session.outbox.empty():
                session.outbox.get_nowait()
            session.outbox.put_nowait(None)

    async def _notify_presence(self, user_id: str, online: bool) -> None:
        for listener in self._presence_listeners:
            try:
                await listener(user_id, online)
            except ChatError as exc:
                logger.warning("Presence update for %s failed: %s", user_id, exc.message)


__all__ = ["Connection", "ConnectionState", "Session", "SessionRegistry"]
