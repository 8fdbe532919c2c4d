from datetime import datetime
from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, List


class EmailCreate(BaseModel):
    message_id: str = Field(..., min_length=1)
    from_email: EmailStr
    to_email: EmailStr
    subject: str = ''
    body: str = ''
    received_at: Optional[datetime] = None


class EmailOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    message_id: str
    from_email: str
    to_email: str
    subject: str
    body: str
    status: str
    classification: Optional[str] = None
    confidence: Optional[int] = None
    priority: Optional[str] = None
    reasoning: Optional[str] = None
    sentiment: Optional[str] = None
    ai_response: Optional[str] = None
    is_responded: bool = False
    escalation_reason: Optional[str] = None
    thread_id: Optional[str] = None
    thread_position: Optional[int] = None
    is_thread_start: Optional[bool] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class EmailPage(BaseModel):
    total: int
    count: int
    limit: int
    offset: int
    items: List[EmailOut]


class DecisionOut(BaseModel):
    outcome: str
    email_id: int
    classification: str
    confidence: int
    priority: str
    reason: Optional[str] = None
    approval_id: Optional[int] = None
    escalation_id: Optional[int] = None
    response: Optional[str] = None


class IngestResult(BaseModel):
    email: EmailOut
    decision: Optional[DecisionOut] = None
    queued: bool = False


class ThreadOut(BaseModel):
    thread_id: str
    customer_email: str
    business_email: str
    summary: str
    emails: List[EmailOut]
