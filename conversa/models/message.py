import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Text, Uuid
from sqlalchemy.orm import relationship

from conversa.database import Base, JSONType, utcnow


class Message(Base):
    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        Uuid(as_uuid=True), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    external_id = Column(Text, unique=True)  # platform message id, dedup + status correlation
    direction = Column(Text, nullable=False)  # inbound, outbound
    type = Column(Text, nullable=False, default="text")  # text, image, video, audio, document, location, interactive
    status = Column(Text, nullable=False)  # delivered, sent, read, failed
    content = Column(Text)
    media = Column(JSONType)  # id, mime_type, sha256, caption, url
    message_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    is_ai_generated = Column(Boolean, nullable=False, default=False)
    error = Column(JSONType)
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
    contact = relationship("Contact")
