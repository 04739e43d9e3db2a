"""Authentication/session models."""
import uuid
from datetime import datetime

from sqlalchemy import Column, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from zenchat.database import Base


class RefreshSession(Base):
    """One refresh token in a rotation lineage.

    Every login/signup starts a new lineage; each rotation consumes the current
    row and adds a successor sharing the same ``lineage_id``.
    """

    __tablename__ = "refresh_sessions"
    __table_args__ = (
        Index("ix_refresh_sessions_lineage", "lineage_id", "revoked_at"),
        Index("ix_refresh_sessions_expires_at", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    lineage_id = Column(String(36), nullable=False)
    jti_hash = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(String(26), default=lambda: datetime.utcnow().isoformat())
    expires_at = Column(String(26), nullable=False)
    consumed_at = Column(String(26))
    revoked_at = Column(String(26))
    rotated_from_id = Column(String(36), ForeignKey("refresh_sessions.id", ondelete="SET NULL"))
    user_agent = Column(String(255))
    ip_address = Column(String(45))

    user = relationship("User", back_populates="refresh_sessions")

    @property
    def is_active(self) -> bool:
        return self.consumed_at is None and self.revoked_at is None
