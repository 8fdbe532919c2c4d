import os, secrets
from fastapi import HTTPException, Security, Header
from fastapi.security import APIKeyHeader
from ..core.config import DEFAULT_TENANT

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: str | None = Security(api_key_header)):
    """Guard for endpoints that change state or send mail.

    Open when SUPPORT_API_KEY is unset or ALLOW_UNAUTH_LOCAL=1 (local dev).
    """
    expected = os.getenv("SUPPORT_API_KEY")
    if not expected or os.getenv('ALLOW_UNAUTH_LOCAL') == '1':
        return None
    if not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return api_key


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    tenant = (x_tenant_id or '').strip()
    return tenant or DEFAULT_TENANT
