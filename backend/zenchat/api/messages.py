"""Message API endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from zenchat.api.deps import get_current_claims, get_db, get_services
from zenchat.schemas.auth import AccessClaims
from zenchat.schemas.chat import MessageCreate, MessageOut
from zenchat.services import conversations
from zenchat.state import AppState

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/{conversation_id}", response_model=list[MessageOut])
def get_messages(
    conversation_id: str,
    after_id: int | None = Query(default=None, ge=0),
    limit: int = Query(default=50, ge=1, le=conversations.MAX_HISTORY_LIMIT),
    db: Session = Depends(get_db),
    claims: AccessClaims = Depends(get_current_claims),
):
    """Conversation history in delivery order; ``after_id`` resumes after a reconnect."""
    messages = conversations.get_history(db, conversation_id, claims.user_id, after_id=after_id, limit=limit)
    return [MessageOut.model_validate(m) for m in messages]


@router.post("/{conversation_id}", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    payload: MessageCreate,
    claims: AccessClaims = Depends(get_current_claims),
    services: AppState = Depends(get_services),
):
    """Send a message without an open socket; it is routed like a socket send."""
    return await services.router.route(conversation_id, claims.user_id, payload.body)
