from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from ..schemas.automation import RuleCreate, RuleUpdate, RuleOut
from ..services.automation_service import list_rules, create_rule, update_rule
from ..services.default_rules import seed_default_rules
from ..services.errors import NotFoundError
from ..services.taxonomy import Classification
from ..db.database import get_db
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()


def _check_classification(value: str) -> str:
    try:
        return Classification(value).value
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown classification {value!r}")


@router.get("/", response_model=List[RuleOut])
def get_rules(classification: Optional[str] = Query(None), db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return list_rules(db, tenant_id, classification)


@router.post("/", response_model=RuleOut, dependencies=[Depends(get_api_key)])
def add_rule(payload: RuleCreate, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    payload.classification = _check_classification(payload.classification)
    return create_rule(db, tenant_id, payload)


@router.put("/{rule_id}", response_model=RuleOut, dependencies=[Depends(get_api_key)])
def edit_rule(rule_id: int, payload: RuleUpdate, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    try:
        return update_rule(db, tenant_id, rule_id, payload)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/seed-defaults", response_model=List[RuleOut], dependencies=[Depends(get_api_key)])
def seed_defaults(db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    seed_default_rules(db, tenant_id)
    return list_rules(db, tenant_id)
