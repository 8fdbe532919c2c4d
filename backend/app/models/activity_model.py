from sqlalchemy import Column, Integer, String, DateTime, Text, Float, JSON
from ..db.database import Base
from datetime import datetime, timezone


class ActivityLog(Base):
    """Append-only audit trail of engine decisions."""
    __tablename__ = 'activity_logs'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    email_id = Column(Integer, index=True, nullable=True)
    action = Column(String, nullable=False)
    type = Column(String, index=True, nullable=False)
    executed_by = Column(String, default='ai')
    customer_email = Column(String, nullable=True, index=True)
    order_number = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    details = Column(Text, nullable=True)
    status = Column(String, default='completed')
    meta = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)


class OutboundMessage(Base):
    __tablename__ = 'outbound_messages'
    id = Column(Integer, primary_key=True, index=True)
    to_email = Column(String, nullable=False)
    subject = Column(String, default='')
    html = Column(Text, default='')
    sent_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
