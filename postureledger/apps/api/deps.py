from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postureledger.persistence.db import get_session
from postureledger.services.ownership import ADMIN_ROLES


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity forwarded by the authenticating gateway.
    organization_id: str
    actor_id: str
    role: str = "MEMBER"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


async def get_current_principal(
    x_org_id: str | None = Header(default=None, alias="X-Org-Id"),
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_role: str | None = Header(default=None, alias="X-Role"),
) -> Principal:
    if not x_org_id or not x_actor_id:
        raise _auth_error("Missing principal headers")
    return Principal(
        organization_id=x_org_id,
        actor_id=x_actor_id,
        role=(x_role or "MEMBER").strip().upper(),
    )


def require_admin():
    # Dependency factory mirroring the role checks used by management routes.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.is_admin:
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


class DeviceCredentials(BaseModel):
    device_id: str | None
    api_key: str | None


async def get_device_credentials(
    authorization: str | None = Header(default=None),
    x_device_id: str | None = Header(default=None, alias="X-Device-Id"),
) -> DeviceCredentials:
    api_key = None
    if authorization and authorization.lower().startswith("bearer "):
        api_key = authorization[7:].strip() or None
    return DeviceCredentials(device_id=x_device_id, api_key=api_key)
