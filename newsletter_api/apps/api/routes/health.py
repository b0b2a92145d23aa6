from __future__ import annotations

from fastapi import APIRouter
from pydantic import BaseModel

from newsletter_api.apps.api.response import DEFAULT_ERROR_RESPONSES

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok")
