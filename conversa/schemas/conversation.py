from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class ReadResponse(BaseModel):
    success: bool
    conversation_id: UUID
    receipt_sent: bool
    message: Optional[str] = None


class SurveyRequest(BaseModel):
    restaurant_name: str


class SurveyResponse(BaseModel):
    success: bool
    conversation_id: UUID
    state: Optional[str] = None
    message_id: Optional[UUID] = None
    message: Optional[str] = None
