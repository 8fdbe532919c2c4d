from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import List, Optional, Tuple
from sqlalchemy import case
from ..models.email_model import Email
from ..schemas.email import EmailCreate
from .errors import DuplicateEmailError
from datetime import datetime, timezone
import logging

log = logging.getLogger(__name__)


def create_email(db: Session, payload: EmailCreate, tenant_id: str) -> Email:
    """Insert an inbound email in ``processing`` state.

    The (message_id, tenant_id) unique constraint is the only duplicate
    guard; a collision raises ``DuplicateEmailError``.
    """
    email = Email(
        tenant_id=tenant_id,
        message_id=payload.message_id,
        from_email=str(payload.from_email),
        to_email=str(payload.to_email),
        subject=payload.subject or '',
        body=payload.body or '',
        status='processing',
        created_at=payload.received_at or datetime.now(timezone.utc),
    )
    db.add(email)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        log.info("email_duplicate_rejected", extra={"tenant_id": tenant_id, "reason": payload.message_id})
        raise DuplicateEmailError(payload.message_id, tenant_id)
    db.refresh(email)
    return email


def email_exists(db: Session, tenant_id: str, message_id: str) -> bool:
    return db.query(Email).filter(Email.tenant_id == tenant_id, Email.message_id == message_id).first() is not None


def get_email(db: Session, email_id: int, tenant_id: Optional[str] = None) -> Optional[Email]:
    q = db.query(Email).filter(Email.id == email_id)
    if tenant_id:
        q = q.filter(Email.tenant_id == tenant_id)
    return q.first()


def list_emails(
    db: Session,
    tenant_id: str,
    status: Optional[str] = None,
    classification: Optional[str] = None,
    priority: Optional[str] = None,
    q_search: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Email], int]:
    """List a tenant's emails, most urgent first then newest.

    q_search: simple case-insensitive containment on subject/body/sender.
    """
    q = db.query(Email).filter(Email.tenant_id == tenant_id)
    if status:
        q = q.filter(Email.status == status)
    if classification:
        q = q.filter(Email.classification == classification.lower())
    if priority:
        q = q.filter(Email.priority == priority.lower())
    if q_search:
        like = f"%{q_search.lower()}%"
        q = q.filter((Email.subject.ilike(like)) | (Email.body.ilike(like)) | (Email.from_email.ilike(like)))
    total = q.count()
    priority_order = case(
        (Email.priority == 'urgent', 0),
        (Email.priority == 'high', 1),
        (Email.priority == 'medium', 2),
        else_=3,
    )
    items = q.order_by(priority_order, Email.created_at.desc(), Email.id.desc()).offset(offset).limit(limit).all()
    return items, total


def record_classification(db: Session, email: Email, classification: str, confidence: int, priority: str, reasoning: str, sentiment: Optional[str]) -> Email:
    email.classification = classification
    email.confidence = confidence
    email.priority = priority
    email.reasoning = reasoning
    email.sentiment = sentiment
    db.commit()
    db.refresh(email)
    return email


def mark_status(db: Session, email: Email, status: str, reason: Optional[str] = None, response: Optional[str] = None, responded: Optional[bool] = None) -> Email:
    email.status = status
    if reason is not None:
        email.escalation_reason = reason
    if response is not None:
        email.ai_response = response
    if responded is not None:
        email.is_responded = responded
    email.processed_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(email)
    return email
