import uuid

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from conversa.database import Base, utcnow


class Account(Base):
    """A WhatsApp Business sending number."""

    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    phone_number_id = Column(Text, nullable=False, unique=True)  # routing id from webhook metadata
    business_account_id = Column(Text)
    access_token = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    conversations = relationship("Conversation", back_populates="account")
