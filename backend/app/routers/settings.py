from fastapi import APIRouter, Depends
from typing import List
from sqlalchemy.orm import Session

from ..schemas.automation import SettingsIn, SettingsOut, PromoCodeIn, PromoCodeOut
from ..services.automation_service import get_settings, upsert_settings, list_promo_codes, create_promo_code
from ..db.database import get_db
from ..security.api_key import get_api_key, get_tenant_id

router = APIRouter()


@router.get("/", response_model=SettingsOut)
def read_settings(db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    row = get_settings(db, tenant_id)
    if row is None:
        return SettingsOut(tenant_id=tenant_id)
    return row


@router.put("/", response_model=SettingsOut, dependencies=[Depends(get_api_key)])
def write_settings(payload: SettingsIn, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return upsert_settings(db, tenant_id, payload)


@router.get("/promo-codes", response_model=List[PromoCodeOut])
def promo_codes(db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return list_promo_codes(db, tenant_id)


@router.post("/promo-codes", response_model=PromoCodeOut, dependencies=[Depends(get_api_key)])
def add_promo_code(payload: PromoCodeIn, db: Session = Depends(get_db), tenant_id: str = Depends(get_tenant_id)):
    return create_promo_code(db, tenant_id, payload)
