import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, Uuid

from conversa.database import Base, JSONType, utcnow


class Survey(Base):
    """Satisfaction form answered through a WhatsApp Flow. Written once."""

    __tablename__ = "surveys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id", ondelete="SET NULL"))
    restaurant_name = Column(Text, nullable=False)
    full_name = Column(Text)
    cpf = Column(Text)
    cep = Column(Text)
    address = Column(Text)
    rating = Column(Integer)  # 1..5, NULL when the choice token was unreadable
    rating_label = Column(Text)
    comments = Column(Text)
    raw_response = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
