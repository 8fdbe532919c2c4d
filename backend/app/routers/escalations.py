from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from ..schemas.automation import EscalationOut, EscalationUpdate
from ..services.automation_service import list_escalations, update_escalation_status
from ..services.activity_service import log_activity
from ..services.errors import NotFoundError, InvalidTransitionError
from ..db.database import get_db
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()


@router.get("/", response_model=List[EscalationOut])
def list_items(
    status: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    return list_escalations(db, tenant_id, status=status, priority=priority, limit=limit, offset=offset)


@router.patch("/{item_id}", response_model=EscalationOut, dependencies=[Depends(get_api_key)])
def update_item(item_id: int, body: EscalationUpdate, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    try:
        item = update_escalation_status(db, tenant_id, item_id, body.status, body.notes)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    log_activity(db, tenant_id, f"Escalation {item.status}", 'escalation', status=item.status,
                 email_id=item.email_id, executed_by='operator', details=body.notes)
    return item
