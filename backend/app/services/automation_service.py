from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime, timezone
import logging

from ..models.automation_model import AutomationRule, ApprovalItem, EscalationItem
from ..models.settings_model import TenantSettings, PromoCodeConfig
from ..models.email_model import Email
from ..schemas.automation import RuleCreate, RuleUpdate, SettingsIn, PromoCodeIn
from .errors import NotFoundError, InvalidTransitionError

log = logging.getLogger(__name__)

# allowed escalation status moves; any open item may also be closed
ESCALATION_TRANSITIONS = {
    'pending': {'in_progress', 'resolved', 'closed'},
    'in_progress': {'resolved', 'closed'},
    'resolved': {'closed'},
    'closed': set(),
}


# --- rules -----------------------------------------------------------------

def list_rules(db: Session, tenant_id: str, classification: Optional[str] = None) -> List[AutomationRule]:
    q = db.query(AutomationRule).filter(AutomationRule.tenant_id == tenant_id)
    if classification:
        q = q.filter(AutomationRule.classification == classification)
    return q.order_by(AutomationRule.id).all()


def create_rule(db: Session, tenant_id: str, payload: RuleCreate) -> AutomationRule:
    rule = AutomationRule(tenant_id=tenant_id, **payload.model_dump())
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def update_rule(db: Session, tenant_id: str, rule_id: int, payload: RuleUpdate) -> AutomationRule:
    rule = db.query(AutomationRule).filter(AutomationRule.id == rule_id, AutomationRule.tenant_id == tenant_id).first()
    if not rule:
        raise NotFoundError(f"rule {rule_id} not found")
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(rule, key, value)
    db.commit()
    db.refresh(rule)
    return rule


def record_rule_trigger(db: Session, rule: AutomationRule) -> AutomationRule:
    rule.trigger_count = (rule.trigger_count or 0) + 1
    rule.last_triggered = datetime.now(timezone.utc)
    db.commit()
    db.refresh(rule)
    return rule


# --- approvals -------------------------------------------------------------

def create_approval(db: Session, email: Email, rule: Optional[AutomationRule], classification: str, confidence: int, proposed_response: str, metadata: dict) -> ApprovalItem:
    item = ApprovalItem(
        tenant_id=email.tenant_id,
        email_id=email.id,
        rule_id=rule.id if rule else None,
        customer_email=email.from_email,
        subject=email.subject,
        body=email.body,
        classification=classification,
        confidence=confidence,
        proposed_response=proposed_response,
        status='pending',
        meta=metadata,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def list_approvals(db: Session, tenant_id: str, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[ApprovalItem]:
    q = db.query(ApprovalItem).filter(ApprovalItem.tenant_id == tenant_id)
    if status:
        q = q.filter(ApprovalItem.status == status)
    return q.order_by(ApprovalItem.created_at.desc(), ApprovalItem.id.desc()).offset(offset).limit(limit).all()


def get_approval(db: Session, item_id: int, tenant_id: Optional[str] = None) -> ApprovalItem:
    q = db.query(ApprovalItem).filter(ApprovalItem.id == item_id)
    if tenant_id:
        q = q.filter(ApprovalItem.tenant_id == tenant_id)
    item = q.first()
    if not item:
        raise NotFoundError(f"approval item {item_id} not found")
    return item


# --- escalations -----------------------------------------------------------

def create_escalation(db: Session, email: Email, priority: str, reason: str, suggested_response: Optional[str] = None) -> EscalationItem:
    item = EscalationItem(
        tenant_id=email.tenant_id,
        email_id=email.id,
        priority=priority,
        reason=reason,
        status='pending',
        ai_suggested_response=suggested_response,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def list_escalations(db: Session, tenant_id: str, status: Optional[str] = None, priority: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[EscalationItem]:
    q = db.query(EscalationItem).filter(EscalationItem.tenant_id == tenant_id)
    if status:
        q = q.filter(EscalationItem.status == status)
    if priority:
        q = q.filter(EscalationItem.priority == priority)
    return q.order_by(EscalationItem.created_at.desc(), EscalationItem.id.desc()).offset(offset).limit(limit).all()


def update_escalation_status(db: Session, tenant_id: str, item_id: int, status: str, notes: Optional[str] = None) -> EscalationItem:
    item = db.query(EscalationItem).filter(EscalationItem.id == item_id, EscalationItem.tenant_id == tenant_id).first()
    if not item:
        raise NotFoundError(f"escalation {item_id} not found")
    if status not in ESCALATION_TRANSITIONS:
        raise InvalidTransitionError(f"unknown escalation status {status!r}")
    if status != item.status and status not in ESCALATION_TRANSITIONS[item.status]:
        raise InvalidTransitionError(f"cannot move escalation from {item.status} to {status}")
    item.status = status
    if notes is not None:
        item.notes = notes
    if status == 'resolved':
        item.resolved_at = datetime.now(timezone.utc)
        email = db.query(Email).filter(Email.id == item.email_id).first()
        if email:
            email.status = 'resolved'
            email.processed_at = item.resolved_at
    db.commit()
    db.refresh(item)
    return item


# --- settings & promo codes ------------------------------------------------

def get_settings(db: Session, tenant_id: str) -> Optional[TenantSettings]:
    return db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()


def upsert_settings(db: Session, tenant_id: str, payload: SettingsIn) -> TenantSettings:
    row = get_settings(db, tenant_id)
    if row is None:
        row = TenantSettings(tenant_id=tenant_id)
        db.add(row)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(row, key, value)
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(row)
    return row


def list_promo_codes(db: Session, tenant_id: str) -> List[PromoCodeConfig]:
    return db.query(PromoCodeConfig).filter(PromoCodeConfig.tenant_id == tenant_id).order_by(PromoCodeConfig.id).all()


def create_promo_code(db: Session, tenant_id: str, payload: PromoCodeIn) -> PromoCodeConfig:
    row = PromoCodeConfig(tenant_id=tenant_id, **payload.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
