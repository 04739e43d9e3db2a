import asyncio
from datetime import datetime
import time

import pytest

from conftest import TEST_SECRET_KEY
from helpers import access_token_for, create_conversation, create_user, drain
from zenchat.errors import InternalError, InvalidRequestError, NotAMemberError
from zenchat.models.message import Message
from zenchat.realtime.registry import SessionRegistry
from zenchat.realtime.router import ConversationRouter
from zenchat.services.tokens import TokenService


@pytest.fixture
def chat(session_factory):
    tokens = TokenService(TEST_SECRET_KEY)
    alice = create_user(session_factory, "alice")
    bob = create_user(session_factory, "bob")
    mallory = create_user(session_factory, "mallory")
    conversation_id = create_conversation(session_factory, alice, bob)
    return {
        "tokens": tokens,
        "users": {"alice": alice, "bob": bob, "mallory": mallory},
        "access": {
            name: access_token_for(tokens, session_factory, user)
            for name, user in (("alice", alice), ("bob", bob), ("mallory", mallory))
        },
        "conversation_id": conversation_id,
    }


def _build(chat, session_factory, outbox_size=1000):
    registry = SessionRegistry(chat["tokens"], outbox_size=outbox_size)
    router = ConversationRouter(registry, session_factory)
    router.attach()
    return registry, router


def _stored_messages(session_factory, conversation_id):
    db = session_factory()
    try:
        return db.query(Message).filter(Message.conversation_id == conversation_id).all()
    finally:
        db.close()


def test_join_requires_membership(chat, session_factory):
    async def _run():
        registry, router = _build(chat, session_factory)
        outsider = await registry.connect(chat["access"]["mallory"])

        with pytest.raises(NotAMemberError):
            await router.join(outsider, chat["conversation_id"])
        assert chat["conversation_id"] not in outsider.joined_conversation_ids

    asyncio.run(_run())


def test_route_from_non_member_stores_nothing(chat, session_factory):
    async def _run():
        registry, router = _build(chat, session_factory)
        with pytest.raises(NotAMemberError):
            await router.route(chat["conversation_id"], chat["users"]["mallory"].id, "hello")

    asyncio.run(_run())

    assert _stored_messages(session_factory, chat["conversation_id"]) == []


def test_route_rejects_empty_body(chat, session_factory):
    async def _run():
        _, router = _build(chat, session_factory)
        with pytest.raises(InvalidRequestError):
            await router.route(chat["conversation_id"], chat["users"]["alice"].id, "   ")

    asyncio.run(_run())


def test_message_reaches_every_joined_session(chat, session_factory):
    conversation_id = chat["conversation_id"]

    async def _run():
        registry, router = _build(chat, session_factory)
        alice = await registry.connect(chat["access"]["alice"])
        bob_phone = await registry.connect(chat["access"]["bob"])
        bob_laptop = await registry.connect(chat["access"]["bob"])
        bob_idle = await registry.connect(chat["access"]["bob"])
        for session in (alice, bob_phone, bob_laptop):
            await router.join(session, conversation_id)
        for session in (alice, bob_phone, bob_laptop, bob_idle):
            drain(session)

        message = await router.route(conversation_id, chat["users"]["alice"].id, "hi bob")

        for session in (alice, bob_phone, bob_laptop):
            assert drain(session) == [{"type": "message", "message": message.model_dump()}]
        # Not joined, so not targeted
        assert drain(bob_idle) == []
        return message

    message = asyncio.run(_run())

    assert message.body == "hi bob"
    assert message.sender_id == chat["users"]["alice"].id
    assert [m.id for m in _stored_messages(session_factory, conversation_id)] == [message.id]


def test_concurrent_sends_are_seen_in_one_order(chat, session_factory):
    conversation_id = chat["conversation_id"]
    alice_id, bob_id = chat["users"]["alice"].id, chat["users"]["bob"].id

    async def _run():
        registry, router = _build(chat, session_factory)
        alice = await registry.connect(chat["access"]["alice"])
        bob = await registry.connect(chat["access"]["bob"])
        for session in (alice, bob):
            await router.join(session, conversation_id)
            drain(session)

        sends = []
        for i in range(10):
            sends.append(router.route(conversation_id, alice_id, f"alice {i}"))
            sends.append(router.route(conversation_id, bob_id, f"bob {i}"))
        await asyncio.gather(*sends)

        seen_by_alice = [e["message"]["id"] for e in drain(alice)]
        seen_by_bob = [e["message"]["id"] for e in drain(bob)]
        return seen_by_alice, seen_by_bob

    seen_by_alice, seen_by_bob = asyncio.run(_run())

    assert len(seen_by_alice) == 20
    assert seen_by_alice == seen_by_bob
    stored = sorted(_stored_messages(session_factory, conversation_id), key=lambda m: (m.sent_at, m.id))
    assert [m.id for m in stored] == seen_by_alice


def test_sender_without_session_still_persists(chat, session_factory):
    async def _run():
        _, router = _build(chat, session_factory)
        return await router.route(chat["conversation_id"], chat["users"]["bob"].id, "sent over REST")

    message = asyncio.run(_run())

    assert [m.id for m in _stored_messages(session_factory, chat["conversation_id"])] == [message.id]


def test_disconnected_session_gets_nothing_and_leaves_presence(chat, session_factory):
    conversation_id = chat["conversation_id"]

    async def _run():
        registry, router = _build(chat, session_factory)
        alice = await registry.connect(chat["access"]["alice"])
        bob = await registry.connect(chat["access"]["bob"])
        await router.join(bob, conversation_id)
        drain(bob)

        await registry.disconnect(bob.connection_id)
        assert not registry.is_online(chat["users"]["bob"].id)

        await router.route(conversation_id, chat["users"]["alice"].id, "are you there?")
        assert drain(bob) == []
        assert alice.user_id in registry.online_users()

    asyncio.run(_run())


def test_presence_is_broadcast_to_co_participants(chat, session_factory):
    bob_id = chat["users"]["bob"].id

    async def _run():
        registry, _ = _build(chat, session_factory)
        alice = await registry.connect(chat["access"]["alice"])
        mallory = await registry.connect(chat["access"]["mallory"])
        drain(alice)
        drain(mallory)

        bob = await registry.connect(chat["access"]["bob"])
        assert drain(alice) == [{"type": "presence", "user_id": bob_id, "online": True}]

        await registry.disconnect(bob.connection_id)
        assert drain(alice) == [{"type": "presence", "user_id": bob_id, "online": False}]
        # Shares no conversation with bob
        assert drain(mallory) == []

    asyncio.run(_run())


def test_overflowing_session_is_forced_to_disconnect(chat, session_factory):
    conversation_id = chat["conversation_id"]
    alice_id = chat["users"]["alice"].id

    async def _run():
        registry, router = _build(chat, session_factory, outbox_size=2)
        bob = await registry.connect(chat["access"]["bob"])
        await router.join(bob, conversation_id)
        drain(bob)

        for i in range(3):
            await router.route(conversation_id, alice_id, f"message {i}")

        assert registry.get(bob.connection_id) is None
        assert not registry.is_online(bob.user_id)

    asyncio.run(_run())


def test_timed_out_route_stores_and_delivers_nothing(chat, session_factory):
    conversation_id = chat["conversation_id"]

    def slow_clock():
        time.sleep(0.5)
        return datetime.utcnow()

    async def _run():
        registry = SessionRegistry(chat["tokens"])
        router = ConversationRouter(registry, session_factory, datastore_timeout=0.1, now_fn=slow_clock)
        bob = await registry.connect(chat["access"]["bob"])
        bob.joined_conversation_ids.add(conversation_id)

        with pytest.raises(InternalError):
            await router.route(conversation_id, chat["users"]["alice"].id, "hello")

        # Let the abandoned worker finish its transaction
        await asyncio.sleep(1.0)
        return drain(bob)

    assert asyncio.run(_run()) == []
    assert _stored_messages(session_factory, conversation_id) == []
