"""Shared builders for tests that need rows or live sessions."""
from zenchat.models.conversation import Conversation, ConversationParticipant
from zenchat.models.user import User
from zenchat.services.tokens import TokenService


def create_user(session_factory, username: str) -> User:
    db = session_factory()
    try:
        user = User(username=username, email=f"{username}@example.com", password_hash="hashed")
        db.add(user)
        db.commit()
        return user
    finally:
        db.close()


def create_conversation(session_factory, *users: User, name: str | None = None) -> str:
    db = session_factory()
    try:
        conversation = Conversation(name=name, is_group=int(len(users) > 2))
        db.add(conversation)
        db.flush()
        for user in users:
            db.add(ConversationParticipant(conversation_id=conversation.id, user_id=user.id))
        db.commit()
        return conversation.id
    finally:
        db.close()


def access_token_for(tokens: TokenService, session_factory, user: User) -> str:
    db = session_factory()
    try:
        pair = tokens.issue(db, user)
        db.commit()
        return pair.access_token
    finally:
        db.close()


def drain(session) -> list:
    """Everything queued on a session outbox, without the writer stop marker."""
    events = []
    while not session.outbox.empty():
        event = session.outbox.get_nowait()
        if event is not None:
            events.append(event)
    return events
