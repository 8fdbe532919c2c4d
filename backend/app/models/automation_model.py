from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, Float, JSON, ForeignKey
from ..db.database import Base
from datetime import datetime, timezone


def _now():
    return datetime.now(timezone.utc)


class AutomationRule(Base):
    __tablename__ = 'automation_rules'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    classification = Column(String, index=True, nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    requires_approval = Column(Boolean, default=True)
    template = Column(Text, nullable=True)
    conditions = Column(JSON, nullable=True)
    trigger_count = Column(Integer, default=0)
    last_triggered = Column(DateTime, nullable=True)
    # promo refund configuration
    refund_type = Column(String, nullable=True)  # percentage | fixed_amount
    refund_value = Column(Float, nullable=True)
    refund_cap = Column(Float, nullable=True)
    min_order_amount = Column(Float, nullable=True)
    max_order_amount = Column(Float, nullable=True)
    first_time_customer_only = Column(Boolean, default=False)
    created_at = Column(DateTime, default=_now)


class ApprovalItem(Base):
    __tablename__ = 'approval_items'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    email_id = Column(Integer, ForeignKey('emails.id'), index=True, nullable=False)
    rule_id = Column(Integer, ForeignKey('automation_rules.id'), nullable=True)
    customer_email = Column(String, nullable=False)
    subject = Column(String, default='')
    body = Column(Text, default='')
    classification = Column(String, nullable=False)
    confidence = Column(Integer, nullable=False)
    proposed_response = Column(Text, nullable=False)
    # pending | approved | rejected | edited | executed
    status = Column(String, default='pending', index=True)
    rejection_reason = Column(Text, nullable=True)
    original_response = Column(Text, nullable=True)
    edited_response = Column(Text, nullable=True)
    was_edited = Column(Boolean, default=False)
    meta = Column('metadata', JSON, nullable=True)
    created_at = Column(DateTime, default=_now)
    reviewed_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)


class EscalationItem(Base):
    __tablename__ = 'escalation_items'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    email_id = Column(Integer, ForeignKey('emails.id'), index=True, nullable=False)
    priority = Column(String, default='medium', index=True)
    reason = Column(Text, nullable=False)
    # pending | in_progress | resolved | closed
    status = Column(String, default='pending', index=True)
    notes = Column(Text, nullable=True)
    ai_suggested_response = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now)
    resolved_at = Column(DateTime, nullable=True)
