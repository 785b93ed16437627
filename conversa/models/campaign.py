import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from conversa.database import Base, JSONType, utcnow


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="draft")  # draft, scheduled, running, paused, completed, cancelled
    template_name = Column(Text, nullable=False)
    template_language = Column(Text, nullable=False, default="pt_BR")
    template_parameters = Column(JSONType, nullable=False, default=dict)
    segment_filters = Column(JSONType, nullable=False, default=list)
    rate_limit_per_minute = Column(Integer)
    dispatch_generation = Column(Integer, nullable=False, default=0)
    total_contacts = Column(Integer, nullable=False, default=0)
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    read_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    scheduled_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    paused_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    account = relationship("Account")
    recipients = relationship("CampaignContact", back_populates="campaign", cascade="all, delete-orphan")


class CampaignContact(Base):
    __tablename__ = "campaign_contacts"
    __table_args__ = (UniqueConstraint("campaign_id", "contact_id", name="uq_campaign_contact"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id = Column(
        Uuid(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_id = Column(Uuid(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending, sent, failed
    message_id = Column(Text, index=True)  # transport id, correlates delivery/read callbacks
    error_message = Column(Text)
    personalized_parameters = Column(JSONType, nullable=False, default=dict)
    sent_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    campaign = relationship("Campaign", back_populates="recipients")
    contact = relationship("Contact")
