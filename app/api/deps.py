from __future__ import annotations

from typing import NamedTuple

from fastapi import Header, HTTPException


class Ctx(NamedTuple):
    tenant_id: str
    user_id: str


def get_ctx(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> Ctx:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="Missing X-Tenant-Id")
    if len(x_tenant_id) > 36:
        # tenant ids are uuids
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-Id")
    if not x_user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-Id")
    return Ctx(tenant_id=x_tenant_id, user_id=x_user_id)
