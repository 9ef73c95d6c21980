"""Response envelopes for the versioned API.

Every ``/api/v1`` response is ``{"data": ...}`` or ``{"error": ...}`` plus a
``meta`` block carrying the request id. Unversioned routes such as ``/health``
return their payload bare.
"""

from __future__ import annotations

import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"
REQUEST_ID_HEADER = "X-Request-Id"

# Caller-supplied ids are echoed into responses, logs and audit trails.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def normalize_request_id(candidate: str | None) -> str:
    """Keep a well-formed caller id, otherwise mint a fresh one."""
    if candidate:
        candidate = candidate.strip()
        if _REQUEST_ID_RE.fullmatch(candidate):
            return candidate
    return str(uuid4())


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = normalize_request_id(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
