from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from grantflow.apps.api.response import SuccessEnvelope, success_response
from grantflow.persistence.db import SessionLocal, pool_stats

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, Any]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Report degraded instead of failing so load balancers can tell DB trouble from a dead process.
    database = "ok"
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
    )
    return success_response(request=request, data=payload.model_dump())
