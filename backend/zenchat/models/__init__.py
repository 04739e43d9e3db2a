"""SQLAlchemy models package."""
from zenchat.models.user import RoleCode, User
from zenchat.models.auth import RefreshSession
from zenchat.models.conversation import Conversation, ConversationParticipant
from zenchat.models.message import Message

__all__ = [
    "User",
    "RoleCode",
    "RefreshSession",
    "Conversation",
    "ConversationParticipant",
    "Message",
]
