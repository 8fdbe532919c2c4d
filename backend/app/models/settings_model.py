from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean
from ..db.database import Base
from datetime import datetime, timezone


class TenantSettings(Base):
    __tablename__ = 'tenant_settings'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, unique=True, nullable=False)
    company_name = Column(String, nullable=True)
    ai_agent_name = Column(String, default='Kai')
    ai_agent_title = Column(String, default='AI Customer Service Agent')
    salutation = Column(String, default='Best regards')
    signature_footer = Column(Text, nullable=True)
    empathy_level = Column(Integer, default=3)
    from_email = Column(String, nullable=True)
    knowledge_context = Column(Text, nullable=True)
    enable_first_time_customer_offers = Column(Boolean, default=True)
    enable_general_inquiry_offers = Column(Boolean, default=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


class PromoCodeConfig(Base):
    __tablename__ = 'promo_code_configs'
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False, default='default')
    promo_code = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    # first_time_customer | general_inquiry | refund_only | both
    usage_type = Column(String, default='both')
    discount_type = Column(String, default='percentage')  # percentage | fixed_amount
    discount_amount = Column(String, nullable=False)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    max_offers_per_customer = Column(Integer, default=1)
    offer_frequency_days = Column(Integer, default=90)
    eligible_for_automation = Column(Boolean, default=True)
    is_active = Column(Boolean, default=True)
    usage_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
