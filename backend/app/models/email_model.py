from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, UniqueConstraint
from ..db.database import Base
from datetime import datetime, timezone

class Email(Base):
    __tablename__ = 'emails'
    __table_args__ = (
        UniqueConstraint('message_id', 'tenant_id', name='uq_emails_message_tenant'),
    )
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    # provider message id; duplicate deliveries collide on the unique constraint
    message_id = Column(String, nullable=False)
    from_email = Column(String, index=True, nullable=False)
    to_email = Column(String, index=True, nullable=False)
    subject = Column(String, index=True, default='')
    body = Column(Text, default='')
    status = Column(String, default='processing', index=True)
    classification = Column(String, index=True, nullable=True)
    confidence = Column(Integer, nullable=True)
    priority = Column(String, nullable=True, index=True)
    reasoning = Column(Text, nullable=True)
    sentiment = Column(String, nullable=True)
    ai_response = Column(Text, nullable=True)
    is_responded = Column(Boolean, default=False)
    escalation_reason = Column(Text, nullable=True)
    thread_id = Column(String, index=True, nullable=True)
    thread_position = Column(Integer, nullable=True)
    is_thread_start = Column(Boolean, default=True)
    meta = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)
    processed_at = Column(DateTime, nullable=True)
