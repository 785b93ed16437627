from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from conversa.database import get_db
from conversa.logging_config import get_logger
from conversa.models import Conversation
from conversa.schemas.conversation import ReadResponse, SurveyRequest, SurveyResponse
from conversa.services import conversation_service, survey_service
from conversa.services.state_machine import InvalidTransitionError

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _get_conversation(db: Session, conversation_id: UUID) -> Conversation:
    conversation = (
        db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()
    )
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


@router.post("/{conversation_id}/read", response_model=ReadResponse)
def mark_conversation_read(conversation_id: UUID, db: Session = Depends(get_db)):
    """Operator opened the conversation."""
    conversation = _get_conversation(db, conversation_id)
    result = conversation_service.mark_read(db, conversation)
    db.commit()
    return ReadResponse(
        success=True,
        conversation_id=conversation_id,
        receipt_sent=bool(result.ok and result.value),
        message=result.error,
    )


@router.post("/{conversation_id}/survey", response_model=SurveyResponse)
def send_survey(conversation_id: UUID, request: SurveyRequest, db: Session = Depends(get_db)):
    """Invite the contact to the satisfaction survey of a restaurant unit."""
    conversation = _get_conversation(db, conversation_id)
    if not conversation.is_ai_handled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Conversation is handled by an operator")

    try:
        result = survey_service.start_survey(db, conversation, request.restaurant_name)
    except InvalidTransitionError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if not result.ok:
        db.rollback()
        if result.error_code == "not_configured":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.error)
        return SurveyResponse(success=False, conversation_id=conversation_id, message=result.error)

    db.commit()
    return SurveyResponse(
        success=True,
        conversation_id=conversation_id,
        state=conversation.chatbot_state,
        message_id=result.value.id,
    )
