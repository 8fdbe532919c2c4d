from sqlalchemy.orm import Session
from sqlalchemy import func
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
import logging

from ..models.activity_model import ActivityLog
from ..models.email_model import Email
from ..models.automation_model import ApprovalItem, EscalationItem

log = logging.getLogger(__name__)


def log_activity(
    db: Session,
    tenant_id: str,
    action: str,
    type: str,
    status: str = 'completed',
    email_id: Optional[int] = None,
    customer_email: Optional[str] = None,
    details: Optional[str] = None,
    order_number: Optional[str] = None,
    amount: Optional[float] = None,
    metadata: Optional[Dict[str, Any]] = None,
    executed_by: str = 'ai',
) -> Optional[ActivityLog]:
    """Append an audit row. Returns ``None`` if the write failed; callers carry on."""
    entry = ActivityLog(
        tenant_id=tenant_id,
        email_id=email_id,
        action=action,
        type=type,
        status=status,
        executed_by=executed_by,
        customer_email=customer_email,
        details=details,
        order_number=order_number,
        amount=amount,
        meta=metadata or {},
    )
    try:
        db.add(entry)
        db.commit()
        return entry
    except Exception as e:
        db.rollback()
        log.error("activity_log_failed", exc_info=e, extra={"tenant_id": tenant_id, "email_id": email_id, "reason": action})
        return None


def list_activity(db: Session, tenant_id: str, type: Optional[str] = None, email_id: Optional[int] = None, limit: int = 100, offset: int = 0) -> List[ActivityLog]:
    q = db.query(ActivityLog).filter(ActivityLog.tenant_id == tenant_id)
    if type:
        q = q.filter(ActivityLog.type == type)
    if email_id is not None:
        q = q.filter(ActivityLog.email_id == email_id)
    return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).offset(offset).limit(limit).all()


def count_recent_offers(db: Session, tenant_id: str, customer_email: str, days: int) -> int:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    return (
        db.query(ActivityLog)
        .filter(
            ActivityLog.tenant_id == tenant_id,
            ActivityLog.action == 'promo_code_offered',
            func.lower(ActivityLog.customer_email) == (customer_email or '').lower(),
            ActivityLog.created_at >= since,
        )
        .count()
    )


def processing_stats(db: Session, tenant_id: str) -> Dict[str, Any]:
    base = db.query(Email).filter(Email.tenant_id == tenant_id)
    total = base.count()
    now = datetime.now(timezone.utc)
    last_24 = base.filter(Email.created_at >= now - timedelta(hours=24)).count()
    by_status = {
        s: base.filter(Email.status == s).count()
        for s in ['processing', 'resolved', 'escalated', 'awaiting_approval']
    }
    by_classification = dict(
        db.query(Email.classification, func.count(Email.id))
        .filter(Email.tenant_id == tenant_id, Email.classification.isnot(None))
        .group_by(Email.classification)
        .all()
    )
    avg_conf = (
        db.query(func.avg(Email.confidence))
        .filter(Email.tenant_id == tenant_id, Email.confidence.isnot(None))
        .scalar()
    )
    activity = db.query(ActivityLog).filter(ActivityLog.tenant_id == tenant_id)
    auto_responses = activity.filter(ActivityLog.type == 'auto_response', ActivityLog.status == 'completed').count()
    escalations = db.query(EscalationItem).filter(EscalationItem.tenant_id == tenant_id).count()
    safety_blocks = activity.filter(ActivityLog.type == 'ai_safety').count()
    pending_approvals = db.query(ApprovalItem).filter(ApprovalItem.tenant_id == tenant_id, ApprovalItem.status == 'pending').count()
    processed = auto_responses + escalations
    automation_rate = round(auto_responses / processed * 100, 1) if processed else 0.0
    return {
        'total': total,
        'last_24h': last_24,
        'status': by_status,
        'classification': by_classification,
        'average_confidence': round(float(avg_conf), 1) if avg_conf is not None else None,
        'auto_responses': auto_responses,
        'escalations': escalations,
        'pending_approvals': pending_approvals,
        'safety_blocks': safety_blocks,
        'automation_rate': automation_rate,
    }
