from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class Envelope(BaseModel, Generic[DataT]):
    """Body of every tenant-facing success response."""

    data: DataT
    meta: EnvelopeMeta


class ApiError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def is_tenant_route(request: Request) -> bool:
    # Provider webhooks and ops endpoints answer bare JSON; only /v1 routes are enveloped.
    return request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    # The middleware assigns the id; errors raised outside it still get one.
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    return EnvelopeMeta(request_id=request_id).model_dump()


def envelope(request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_envelope(
    request: Request,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ApiError(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
