"""Realtime websocket endpoint.

Client events::

    {"type": "join", "conversation_id": "..."}
    {"type": "leave", "conversation_id": "..."}
    {"type": "send", "conversation_id": "...", "body": "..."}
    {"type": "ping"}

Server events: ``message``, ``presence``, ``joined``, ``left``, ``pong``,
``error``. All outbound traffic goes through the session outbox, drained by a
single writer task, so routed messages keep their order on the wire.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from zenchat.api.deps import extract_access_token, get_request_ip, get_services
from zenchat.errors import AuthFailureError, ChatError, InternalError, InvalidRequestError
from zenchat.realtime.registry import Session
from zenchat.state import AppState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Connection liveness traffic is exempt from rate checks
UNLIMITED_EVENTS = {"ping"}


async def _drain_outbox(websocket: WebSocket, session: Session) -> None:
    while True:
        event = await session.outbox.get()
        if event is None:
            return
        await websocket.send_json(event)


def _error_event(exc: ChatError, expose_details: bool) -> dict[str, Any]:
    if isinstance(exc, InternalError):
        payload = exc.public_payload(expose_details)
    else:
        payload = exc.to_payload()
    payload.pop("success", None)
    return {"type": "error", **payload}


def _require_conversation_id(event: dict[str, Any]) -> str:
    conversation_id = event.get("conversation_id")
    if not isinstance(conversation_id, str) or not conversation_id:
        raise InvalidRequestError("conversation_id is required")
    return conversation_id


async def _handle_event(services: AppState, session: Session, event: dict[str, Any]) -> dict[str, Any] | None:
    """Apply one client event; returns the direct reply, if any."""
    msg_type = event.get("type")
    if msg_type == "ping":
        return {"type": "pong"}
    if msg_type == "join":
        conversation_id = _require_conversation_id(event)
        await services.router.join(session, conversation_id)
        return {"type": "joined", "conversation_id": conversation_id}
    if msg_type == "leave":
        conversation_id = _require_conversation_id(event)
        services.router.leave(session, conversation_id)
        return {"type": "left", "conversation_id": conversation_id}
    if msg_type == "send":
        conversation_id = _require_conversation_id(event)
        await services.router.route(conversation_id, session.user_id, event.get("body"))
        return None
    raise InvalidRequestError(f"Unknown event type: {msg_type!r}")


async def _message_loop(websocket: WebSocket, services: AppState, session: Session, client_ip: str) -> None:
    expose = services.settings.expose_error_details
    while True:
        raw = await websocket.receive_text()
        try:
            event = json.loads(raw)
        except ValueError:
            event = None
        try:
            if not isinstance(event, dict):
                raise InvalidRequestError("Events must be JSON objects")
            if event.get("type") not in UNLIMITED_EVENTS:
                services.limiter.enforce(client_ip)
            reply = await _handle_event(services, session, event)
        except InternalError as exc:
            logger.error("Internal error on session %s: %s", session.connection_id, exc.message)
            reply = _error_event(exc, expose)
        except ChatError as exc:
            reply = _error_event(exc, expose)
        if reply is not None:
            session.deliver(reply)


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket):
    services: AppState = get_services(websocket)
    client_ip = get_request_ip(websocket)

    decision = services.limiter.check(client_ip)
    if not decision.allowed:
        logger.info("Rejected websocket from %s: rate limited", client_ip)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="rate limit exceeded")
        return

    token = extract_access_token(websocket, services.settings.access_cookie_name)
    try:
        session = await services.registry.connect(token, connection=websocket)
    except AuthFailureError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    writer: asyncio.Task | None = None
    try:
        await websocket.accept()
        writer = asyncio.create_task(_drain_outbox(websocket, session))
        await _message_loop(websocket, services, session, client_ip)
    except WebSocketDisconnect:
        logger.debug("Client closed session %s", session.connection_id)
    finally:
        await services.registry.disconnect(session.connection_id)
        if writer is not None:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("Writer for session %s stopped: %r", session.connection_id, exc)
