from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Response
from fastapi.responses import JSONResponse

from payroll_auth.api.schemas import (
    Envelope,
    HealthResponse,
    LogoutRequest,
    RefreshRequest,
    RefreshResponse,
    RevocationResponse,
)
from payroll_auth.logging import get_logger
from payroll_auth.service.auth import AuthContext, extract_bearer
from payroll_auth.service.errors import ForbiddenError, ValidationError
from payroll_auth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def request_token(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
) -> str:
    """Bearer token from the Authorization header, else the ``token`` query parameter."""
    found = extract_bearer(authorization) or token
    if not found:
        raise ForbiddenError("No token provided")
    return found


async def get_current_user(raw_token: str = Depends(request_token)) -> AuthContext:
    return await get_runtime().auth.authenticate(raw_token)


@router.post("/auth/logout", status_code=204)
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    raw_token: str = Depends(request_token),
):
    runtime = get_runtime()
    result = await runtime.auth.logout(
        raw_token, body.refresh_token if body else None
    )
    logger.info("logout", **result)
    return Response(status_code=204)


@router.post("/auth/logout-all", response_model=Envelope)
async def logout_all(
    raw_token: str = Depends(request_token),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal.user_id)
    # The session making the request goes too
    await runtime.tokens.blacklist(raw_token)
    payload = RevocationResponse(**result.to_dict())
    return Envelope(status="ok", data=payload.model_dump())


@router.post("/auth/refresh", response_model=Envelope)
async def refresh(body: Optional[RefreshRequest] = Body(None)):
    if body is None or not body.refresh_token:
        raise ValidationError("Please log in")
    tokens = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=RefreshResponse(**tokens).model_dump())


@router.get("/health/redis")
async def redis_health():
    status = await get_runtime().tokens.health_check()
    envelope = Envelope(
        status="ok" if status.healthy else "error",
        data=HealthResponse(**status.to_dict()).model_dump(),
    )
    return JSONResponse(
        status_code=200 if status.healthy else 503, content=envelope.model_dump()
    )
