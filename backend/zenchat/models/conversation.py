"""Conversation and membership models."""
import uuid
from datetime import datetime

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from zenchat.database import Base


class Conversation(Base):
    """A chat between a fixed set of participants."""

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100))
    is_group = Column(Integer, default=0)  # SQLite boolean
    created_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"))
    created_at = Column(String(26), default=lambda: datetime.utcnow().isoformat())

    participants = relationship("ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")

    @property
    def participant_ids(self) -> set[str]:
        return {p.user_id for p in self.participants}


class ConversationParticipant(Base):
    """Membership row; the participant set is the routing authorization boundary."""

    __tablename__ = "conversation_participants"
    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    joined_at = Column(String(26), default=lambda: datetime.utcnow().isoformat())

    conversation = relationship("Conversation", back_populates="participants")
    user = relationship("User", back_populates="memberships")
