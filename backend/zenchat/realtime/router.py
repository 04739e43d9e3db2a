"""Conversation message routing and fan-out."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.orm import Session as DbSession, sessionmaker

from zenchat.database import run_db
from zenchat.errors import InvalidRequestError, NotAMemberError
from zenchat.models.message import Message
from zenchat.realtime.registry import Session, SessionRegistry
from zenchat.schemas.chat import MessageOut
from zenchat.services import conversations

logger = logging.getLogger(__name__)

MAX_BODY_LENGTH = 4000

# Close code sent to sessions that fall too far behind
OUTBOX_OVERFLOW_CLOSE_CODE = 1013


def message_event(message: MessageOut) -> dict[str, Any]:
    return {"type": "message", "message": message.model_dump()}


def presence_event(user_id: str, online: bool) -> dict[str, Any]:
    return {"type": "presence", "user_id": user_id, "online": online}


class ConversationRouter:
    """Persists messages and fans them out to joined participant sessions.

    Routing is serialized per conversation: the membership check, timestamp
    assignment, persistence and enqueueing onto every recipient outbox all
    happen under that conversation's lock, so every session observes one
    order. Unrelated conversations route concurrently.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        session_factory: sessionmaker,
        *,
        datastore_timeout: float = 5.0,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._session_factory = session_factory
        self._timeout = datastore_timeout
        self._now = now_fn or datetime.utcnow
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    def attach(self) -> None:
        """Subscribe to registry presence changes."""
        self._registry.add_presence_listener(self.broadcast_presence)

    async def join(self, session: Session, conversation_id: str) -> None:
        """Start fanning ``conversation_id`` out to this session.

        Only the session's targeting changes; the participant set does not.
        """
        await run_db(
            self._session_factory,
            lambda db: conversations.require_participant(db, conversation_id, session.user_id),
            self._timeout,
        )
        if self._registry.get(session.connection_id) is session:
            session.joined_conversation_ids.add(conversation_id)
            logger.debug("Session %s joined conversation %s", session.connection_id, conversation_id)

    def leave(self, session: Session, conversation_id: str) -> None:
        session.joined_conversation_ids.discard(conversation_id)

    async def route(self, conversation_id: str, sender_id: str, body: str) -> MessageOut:
        """Validate, persist and deliver a message; returns the stored message.

        The sender does not need an open session.

        Raises:
            NotAMemberError: If the sender is not a participant. Nothing is stored.
            InvalidRequestError: If the body is empty or too long.
            InternalError: If the datastore fails or times out.
        """
        if not isinstance(body, str) or not body.strip():
            raise InvalidRequestError("Message body must not be empty")
        if len(body) > MAX_BODY_LENGTH:
            raise InvalidRequestError(f"Message body exceeds {MAX_BODY_LENGTH} characters")

        async with self._conversation_lock(conversation_id):
            message, recipients = await run_db(
                self._session_factory,
                lambda db: self._persist(db, conversation_id, sender_id, body),
                self._timeout,
            )
            overflowed = self._fan_out(conversation_id, recipients, message_event(message))

        for session in overflowed:
            logger.warning("Session %s outbox overflowed; forcing disconnect", session.connection_id)
            await self._registry.disconnect(
                session.connection_id,
                close=True,
                code=OUTBOX_OVERFLOW_CLOSE_CODE,
                reason="outbox overflow",
            )
        return message

    async def broadcast_presence(self, user_id: str, online: bool) -> None:
        """Tell connected users who share a conversation that ``user_id`` changed state."""
        interested = await run_db(
            self._session_factory,
            lambda db: conversations.co_participant_ids(db, user_id),
            self._timeout,
        )
        event = presence_event(user_id, online)
        for session in self._registry.sessions_for_users(interested):
            session.deliver(event)

    def _persist(self, db: DbSession, conversation_id: str, sender_id: str, body: str) -> tuple[MessageOut, set[str]]:
        recipients = conversations.participant_ids(db, conversation_id)
        if sender_id not in recipients:
            raise NotAMemberError()

        last = db.query(Message.sent_at).filter(
            Message.conversation_id == conversation_id,
        ).order_by(Message.sent_at.desc(), Message.id.desc()).first()
        sent_at = self._now().isoformat(timespec="microseconds")
        if last is not None and last.sent_at > sent_at:
            # Clock went backwards; keep sent_at monotonic within the conversation.
            sent_at = last.sent_at

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            body=body,
            sent_at=sent_at,
        )
        db.add(message)
        db.flush()
        return MessageOut.model_validate(message), recipients

    def _fan_out(self, conversation_id: str, recipients: set[str], event: dict[str, Any]) -> list[Session]:
        overflowed: list[Session] = []
        delivered = 0
        for session in self._registry.sessions_for_users(recipients):
            if conversation_id not in session.joined_conversation_ids:
                continue
            if session.deliver(event):
                delivered += 1
            else:
                overflowed.append(session)
        logger.debug("Routed message in %s to %d session(s)", conversation_id, delivered)
        return overflowed

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_holders[conversation_id] = self._lock_holders.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[conversation_id] -= 1
            if not self._lock_holders[conversation_id]:
                del self._lock_holders[conversation_id]
                del self._locks[conversation_id]


__all__ = ["ConversationRouter", "message_event", "presence_event"]
