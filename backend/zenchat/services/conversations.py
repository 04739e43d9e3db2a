"""Conversation membership and message history queries."""
from sqlalchemy.orm import Session

from zenchat.errors import InvalidRequestError, NotAMemberError, NotFoundError
from zenchat.models.conversation import Conversation, ConversationParticipant
from zenchat.models.message import Message
from zenchat.models.user import User

MAX_HISTORY_LIMIT = 200


def participant_ids(db: Session, conversation_id: str) -> set[str]:
    rows = db.query(ConversationParticipant.user_id).filter(
        ConversationParticipant.conversation_id == conversation_id,
    ).all()
    return {row.user_id for row in rows}


def is_participant(db: Session, conversation_id: str, user_id: str) -> bool:
    return db.query(ConversationParticipant.id).filter(
        ConversationParticipant.conversation_id == conversation_id,
        ConversationParticipant.user_id == user_id,
    ).first() is not None


def require_participant(db: Session, conversation_id: str, user_id: str) -> None:
    """Raise NotAMemberError unless the user belongs to the conversation.

    Unknown conversations fail the same way so ids cannot be probed.
    """
    if not is_participant(db, conversation_id, user_id):
        raise NotAMemberError()


def co_participant_ids(db: Session, user_id: str) -> set[str]:
    """Users sharing at least one conversation with ``user_id``."""
    own = db.query(ConversationParticipant.conversation_id).filter(
        ConversationParticipant.user_id == user_id,
    )
    rows = db.query(ConversationParticipant.user_id).filter(
        ConversationParticipant.conversation_id.in_(own),
        ConversationParticipant.user_id != user_id,
    ).distinct().all()
    return {row.user_id for row in rows}


def _find_direct_conversation(db: Session, user_a: str, user_b: str) -> Conversation | None:
    candidates = db.query(Conversation).join(ConversationParticipant).filter(
        Conversation.is_group == 0,
        ConversationParticipant.user_id == user_a,
    ).all()
    for conversation in candidates:
        if conversation.participant_ids == {user_a, user_b}:
            return conversation
    return None


def create_conversation(
    db: Session,
    creator_id: str,
    participant_ids_in: list[str],
    name: str | None = None,
) -> Conversation:
    """Create a conversation, reusing an existing one-on-one chat.

    The creator is always a participant. One other participant and no name
    means a one-on-one chat; anything else is a group.
    """
    others = {pid for pid in participant_ids_in if pid != creator_id}
    if not others:
        raise InvalidRequestError("A conversation needs at least one other participant")

    found = db.query(User.id).filter(User.id.in_(others)).all()
    if len(found) != len(others):
        raise NotFoundError("User not found")

    is_group = len(others) > 1 or bool(name)
    if not is_group:
        (other,) = others
        existing = _find_direct_conversation(db, creator_id, other)
        if existing is not None:
            return existing

    conversation = Conversation(name=name, is_group=int(is_group), created_by=creator_id)
    db.add(conversation)
    db.flush()
    for user_id in sorted(others | {creator_id}):
        db.add(ConversationParticipant(conversation_id=conversation.id, user_id=user_id))
    db.commit()
    db.refresh(conversation)
    return conversation


def list_conversations(db: Session, user_id: str) -> list[Conversation]:
    return db.query(Conversation).join(ConversationParticipant).filter(
        ConversationParticipant.user_id == user_id,
    ).order_by(Conversation.created_at.desc()).all()


def get_history(
    db: Session,
    conversation_id: str,
    user_id: str,
    after_id: int | None = None,
    limit: int = 50,
) -> list[Message]:
    """Messages in routing order, for clients resynchronising after a reconnect."""
    require_participant(db, conversation_id, user_id)
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if after_id is not None:
        query = query.filter(Message.id > after_id)
    return query.order_by(Message.sent_at.asc(), Message.id.asc()).limit(limit).all()
