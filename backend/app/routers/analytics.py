from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from ..db.database import get_db
from ..schemas.automation import ActivityOut
from ..services.activity_service import processing_stats, list_activity
from ..services.llm_client import ai_diagnostics
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()


@router.get("/summary")
def summary(db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return processing_stats(db, tenant_id)


@router.get("/activity", response_model=List[ActivityOut])
def activity(
    type: Optional[str] = Query(None),
    email_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    return list_activity(db, tenant_id, type=type, email_id=email_id, limit=limit, offset=offset)


@router.get("/ai", dependencies=[Depends(get_api_key)])
def ai_status():
    return ai_diagnostics()
