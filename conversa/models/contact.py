import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from conversa.database import Base, JSONType, utcnow


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False, unique=True)
    name = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, blocked, opted_out
    tags = Column(JSONType, nullable=False, default=list)
    custom_fields = Column(JSONType, nullable=False, default=dict)
    last_seen_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    conversations = relationship("Conversation", back_populates="contact")
