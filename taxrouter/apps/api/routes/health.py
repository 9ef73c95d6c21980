from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from taxrouter.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taxrouter.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Liveness only; no database round-trip.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)
