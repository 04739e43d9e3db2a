"""Conversation and message schemas."""
from pydantic import BaseModel, ConfigDict, Field


class ConversationCreate(BaseModel):
    """Create a one-on-one chat (one participant) or a named group."""

    participant_ids: list[str] = Field(..., min_length=1)
    name: str | None = Field(default=None, max_length=100)


class ParticipantOut(BaseModel):
    id: str
    username: str
    avatar_url: str | None = None
    online: bool = False


class ConversationOut(BaseModel):
    id: str
    name: str | None = None
    is_group: bool
    created_at: str
    participants: list[ParticipantOut]


class MessageCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=4000)


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: str
    sender_id: str | None = None
    body: str
    sent_at: str
