import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import relationship

from conversa.database import Base, JSONType, utcnow


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="open")  # open, pending, closed
    is_ai_handled = Column(Boolean, nullable=False, default=True)
    chatbot_state = Column(Text)  # see DialogueState; NULL means new
    chatbot_context = Column(JSONType, nullable=False, default=dict)
    assigned_user_id = Column(Text)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True))
    escalated_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="conversations")
    contact = relationship("Contact", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
