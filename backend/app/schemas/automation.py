from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class RuleBase(BaseModel):
    name: str
    description: Optional[str] = None
    classification: str
    is_active: bool = True
    requires_approval: bool = True
    template: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None
    refund_type: Optional[str] = None
    refund_value: Optional[float] = None
    refund_cap: Optional[float] = None
    min_order_amount: Optional[float] = None
    max_order_amount: Optional[float] = None
    first_time_customer_only: bool = False


class RuleCreate(RuleBase):
    pass


class RuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    requires_approval: Optional[bool] = None
    template: Optional[str] = None
    conditions: Optional[Dict[str, Any]] = None
    refund_type: Optional[str] = None
    refund_value: Optional[float] = None
    refund_cap: Optional[float] = None
    min_order_amount: Optional[float] = None
    max_order_amount: Optional[float] = None
    first_time_customer_only: Optional[bool] = None


class RuleOut(RuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    trigger_count: int = 0
    last_triggered: Optional[datetime] = None


class ApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email_id: int
    rule_id: Optional[int] = None
    customer_email: str
    subject: str
    classification: str
    confidence: int
    proposed_response: str
    status: str
    rejection_reason: Optional[str] = None
    was_edited: bool = False
    edited_response: Optional[str] = None
    meta: Optional[Dict[str, Any]] = Field(default=None, serialization_alias='metadata')
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class EditRequest(BaseModel):
    response: str = Field(..., min_length=1)


class EscalationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email_id: int
    priority: str
    reason: str
    status: str
    notes: Optional[str] = None
    ai_suggested_response: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class EscalationUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email_id: Optional[int] = None
    action: str
    type: str
    status: str
    customer_email: Optional[str] = None
    details: Optional[str] = None
    amount: Optional[float] = None
    created_at: Optional[datetime] = None


class SettingsIn(BaseModel):
    company_name: Optional[str] = None
    ai_agent_name: Optional[str] = None
    ai_agent_title: Optional[str] = None
    salutation: Optional[str] = None
    signature_footer: Optional[str] = None
    empathy_level: Optional[int] = Field(default=None, ge=1, le=5)
    from_email: Optional[str] = None
    knowledge_context: Optional[str] = None
    enable_first_time_customer_offers: Optional[bool] = None
    enable_general_inquiry_offers: Optional[bool] = None


class SettingsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: str
    company_name: Optional[str] = None
    ai_agent_name: str = 'Kai'
    ai_agent_title: str = 'AI Customer Service Agent'
    salutation: str = 'Best regards'
    signature_footer: Optional[str] = None
    empathy_level: int = 3
    from_email: Optional[str] = None
    knowledge_context: Optional[str] = None
    enable_first_time_customer_offers: bool = True
    enable_general_inquiry_offers: bool = True


class PromoCodeIn(BaseModel):
    promo_code: str = Field(..., min_length=1)
    description: Optional[str] = None
    usage_type: str = 'both'
    discount_type: str = 'percentage'
    discount_amount: str
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    max_offers_per_customer: int = 1
    offer_frequency_days: int = 90
    eligible_for_automation: bool = True
    is_active: bool = True


class PromoCodeOut(PromoCodeIn):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    usage_count: int = 0
