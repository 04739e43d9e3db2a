"""User model."""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from zenchat.database import Base


class RoleCode(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User(Base):
    """User account."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(50), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    avatar_url = Column(String(255))
    role = Column(String(20), nullable=False, default=RoleCode.USER.value)
    created_at = Column(String(26), default=lambda: datetime.utcnow().isoformat())
    updated_at = Column(String(26), default=lambda: datetime.utcnow().isoformat(), onupdate=lambda: datetime.utcnow().isoformat())

    # Relationships
    refresh_sessions = relationship("RefreshSession", back_populates="user", cascade="all, delete-orphan")
    memberships = relationship("ConversationParticipant", back_populates="user", cascade="all, delete-orphan")
