"""Chat message model."""
from sqlalchemy import Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from zenchat.database import Base


class Message(Base):
    """Immutable chat message; ordered by (conversation_id, sent_at, id)."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_order", "conversation_id", "sent_at", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"))
    body = Column(Text, nullable=False)
    sent_at = Column(String(26), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
