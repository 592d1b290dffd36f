from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.persistence.db import get_session
from grantflow.services.idempotency import IDEMPOTENCY_HEADER, IdempotencyRequest, build_request


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity is asserted by the upstream gateway through headers.
    actor_id: str
    tenant_id: str
    role: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    role: str | None = Header(default=None, alias="X-Role"),
) -> Principal:
    if not actor_id or not actor_id.strip():
        raise _auth_error("X-Actor-Id header is required")
    if not tenant_id or not tenant_id.strip():
        raise _auth_error("X-Tenant-Id header is required")
    return Principal(
        actor_id=actor_id.strip(),
        tenant_id=tenant_id.strip(),
        role=(role or "viewer").strip().lower(),
    )


def require_role(*roles: str):
    # Dependency factory to enforce coarse role checks at the route level; admin passes everywhere.
    allowed = {role.lower() for role in roles} | {"admin"}

    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "FORBIDDEN", "message": "Insufficient role for this operation"},
            )
        return principal

    return _dependency


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_HEADER),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key


def expected_version_header(if_match: str | None = Header(default=None, alias="If-Match")) -> int | None:
    # Accept both quoted ETags and weak validators carrying the entity version.
    if if_match is None or not if_match.strip():
        return None
    raw = if_match.strip()
    if raw.startswith("W/"):
        raw = raw[2:]
    raw = raw.strip('"')
    try:
        version = int(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_IF_MATCH", "message": "If-Match must carry an integer entity version"},
        ) from exc
    if version < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_IF_MATCH", "message": "If-Match version must be positive"},
        )
    return version


def idempotency_request(
    raw_key: str | None,
    *,
    request: Request,
    principal: Principal,
    body: BaseModel | None = None,
) -> IdempotencyRequest | None:
    # The hash covers path params and body, so the same key on another entity is a conflict.
    payload = {
        "path": request.url.path,
        "params": dict(request.path_params),
        "body": body.model_dump(mode="json") if body is not None else None,
    }
    return build_request(raw_key, payload=payload, tenant_id=principal.tenant_id)
