from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from ..schemas.automation import ApprovalOut, RejectRequest, EditRequest
from ..services.automation_service import list_approvals, get_approval
from ..services.decision_engine import DecisionEngine, get_engine
from ..services.errors import NotFoundError, InvalidTransitionError
from ..db.database import get_db
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()


def _guard(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/", response_model=List[ApprovalOut])
def list_items(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    return list_approvals(db, tenant_id, status=status, limit=limit, offset=offset)


@router.get("/{item_id}", response_model=ApprovalOut)
def get_item(item_id: int, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return _guard(get_approval, db, item_id, tenant_id)


@router.post("/{item_id}/approve", response_model=ApprovalOut, dependencies=[Depends(get_api_key)])
def approve(item_id: int, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id), engine: DecisionEngine = Depends(get_engine)):
    return _guard(engine.approve, db, item_id, tenant_id=tenant_id)


@router.post("/{item_id}/reject", response_model=ApprovalOut, dependencies=[Depends(get_api_key)])
def reject(item_id: int, body: RejectRequest, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id), engine: DecisionEngine = Depends(get_engine)):
    return _guard(engine.reject, db, item_id, body.reason, tenant_id=tenant_id)


@router.post("/{item_id}/edit", response_model=ApprovalOut, dependencies=[Depends(get_api_key)])
def edit_and_send(item_id: int, body: EditRequest, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id), engine: DecisionEngine = Depends(get_engine)):
    return _guard(engine.edit_and_send, db, item_id, body.response, tenant_id=tenant_id)
