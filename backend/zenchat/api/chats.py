"""Conversation API endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from zenchat.api.deps import get_current_user, get_db, get_services
from zenchat.models.conversation import Conversation
from zenchat.models.user import User
from zenchat.realtime.registry import SessionRegistry
from zenchat.schemas.chat import ConversationCreate, ConversationOut, ParticipantOut
from zenchat.services import conversations
from zenchat.state import AppState

router = APIRouter(prefix="/chat", tags=["chat"])


def conversation_out(conversation: Conversation, registry: SessionRegistry) -> ConversationOut:
    return ConversationOut(
        id=conversation.id,
        name=conversation.name,
        is_group=bool(conversation.is_group),
        created_at=conversation.created_at,
        participants=[
            ParticipantOut(
                id=p.user.id,
                username=p.user.username,
                avatar_url=p.user.avatar_url,
                online=registry.is_online(p.user.id),
            )
            for p in conversation.participants
        ],
    )


@router.post("", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
def create_conversation(
    payload: ConversationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    services: AppState = Depends(get_services),
):
    """Create a group chat, or get-or-create a one-on-one chat."""
    conversation = conversations.create_conversation(
        db,
        current_user.id,
        payload.participant_ids,
        name=payload.name,
    )
    return conversation_out(conversation, services.registry)


@router.get("", response_model=list[ConversationOut])
def list_conversations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    services: AppState = Depends(get_services),
):
    """List the caller's conversations with participant presence."""
    return [
        conversation_out(conversation, services.registry)
        for conversation in conversations.list_conversations(db, current_user.id)
    ]
