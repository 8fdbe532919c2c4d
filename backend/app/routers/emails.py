from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from sqlalchemy.orm import Session
import logging

from ..schemas.email import EmailCreate, EmailOut, EmailPage, DecisionOut, IngestResult, ThreadOut
from ..services.email_service import get_email, list_emails as list_db_emails
from ..services.decision_engine import DecisionEngine, get_engine
from ..services.errors import DuplicateEmailError, InvalidTransitionError
from ..services.queue_worker import enqueue_email
from ..services.sentiment import safe_analyze, sentiment_override
from ..services.taxonomy import Priority
from ..services.thread_linker import get_thread_context
from ..db.database import get_db
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()
log = logging.getLogger(__name__)


@router.post("/ingest", response_model=IngestResult, dependencies=[Depends(get_api_key)])
def ingest_email(
    payload: EmailCreate,
    defer: bool = Query(False, description="enqueue for the background worker instead of routing inline"),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    engine: DecisionEngine = Depends(get_engine),
):
    try:
        email, decision = engine.ingest(db, payload, tenant_id, process=not defer)
    except DuplicateEmailError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if defer:
        # rough urgency from sentiment so angry customers are routed first
        override = sentiment_override(safe_analyze(engine.sentiment_analyzer, email.body), engine.thresholds)
        enqueue_email(email.id, override.priority if override else Priority.MEDIUM, tenant_id)
        return IngestResult(email=EmailOut.model_validate(email), queued=True)
    return IngestResult(email=EmailOut.model_validate(email), decision=DecisionOut(**decision.as_dict()))


@router.get("/", response_model=EmailPage)
def list_emails(
    status: Optional[str] = Query(None),
    classification: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    q: Optional[str] = Query(None, description="search subject, body or sender"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    items, total = list_db_emails(db, tenant_id, status=status, classification=classification, priority=priority, q_search=q, limit=limit, offset=offset)
    return EmailPage(total=total, count=len(items), limit=limit, offset=offset, items=[EmailOut.model_validate(e) for e in items])


@router.get("/{email_id}", response_model=EmailOut)
def get_single(email_id: int, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    email = get_email(db, email_id, tenant_id)
    if not email:
        raise HTTPException(status_code=404, detail="Email not found")
    return email


@router.get("/{email_id}/thread", response_model=ThreadOut)
def get_thread(email_id: int, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    email = get_email(db, email_id, tenant_id)
    if not email:
        raise HTTPException(status_code=404, detail="Email not found")
    context = get_thread_context(db, email.thread_id, tenant_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Email is not part of a thread")
    return ThreadOut(
        thread_id=context.thread_id,
        customer_email=context.customer_email,
        business_email=context.business_email,
        summary=context.summary,
        emails=[EmailOut.model_validate(e) for e in context.emails],
    )


@router.post("/{email_id}/process", response_model=DecisionOut, dependencies=[Depends(get_api_key)])
def process_email(
    email_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
    engine: DecisionEngine = Depends(get_engine),
):
    email = get_email(db, email_id, tenant_id)
    if not email:
        raise HTTPException(status_code=404, detail="Email not found")
    try:
        decision = engine.process(db, email)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return DecisionOut(**decision.as_dict())
