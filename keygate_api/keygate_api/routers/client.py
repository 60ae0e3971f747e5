"""Client endpoints called by the tenant's distributed software.

Every route authenticates the *application* through the ``X-API-Key``
header; the end user is authenticated by the body.  Denials are ordinary
JSON responses with ``success=false``:

- ``401`` when the API key does not resolve to an active application
- ``403`` for every other denial (policy, license, credentials)

Infrastructure faults surface as ``503`` through the application-level
exception handler.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request, status
from fastapi.responses import JSONResponse
from keygate_core.models.outcomes import ClientContext, DenialReason

from keygate_api.dependencies import OrchestratorDep
from keygate_api.schemas import (
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    SessionRequest,
    SessionResponse,
    UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/client", tags=["client"])

ApiKeyHeader = Annotated[str, Header(alias="X-API-Key", min_length=1, max_length=256)]

_SESSION_INVALID = "Session is invalid or has expired."


def _get_client_ip(request: Request) -> str | None:
    """Extract the client IP, respecting X-Forwarded-For for reverse-proxied deployments."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # The leftmost entry is the original client.
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _context(request: Request, *, hwid: str | None = None, version: str | None = None) -> ClientContext:
    return ClientContext(
        ip_address=_get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        hwid=hwid,
        version=version,
    )


def _denial_status(reason: DenialReason | None) -> int:
    if reason == DenialReason.INVALID_APPLICATION:
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_403_FORBIDDEN


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    api_key: ApiKeyHeader,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Authenticate an end user and open a session."""
    outcome = await orchestrator.login(
        api_key,
        body.username,
        body.password,
        _context(request, hwid=body.hwid, version=body.version),
    )
    payload = LoginResponse(success=outcome.success, message=outcome.message)
    if not outcome.success:
        payload.reason = outcome.reason.value if outcome.reason is not None else None
        return JSONResponse(status_code=_denial_status(outcome.reason), content=payload.model_dump(mode="json"))

    assert outcome.session is not None and outcome.user is not None
    payload.session_token = outcome.session.session_token
    payload.session_expires_at = outcome.session.expires_at
    payload.user = UserResponse.from_user(outcome.user)
    return JSONResponse(status_code=status.HTTP_200_OK, content=payload.model_dump(mode="json"))


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    request: Request,
    api_key: ApiKeyHeader,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Create an end user, consuming a license seat when required."""
    outcome = await orchestrator.register(
        api_key,
        body.username,
        body.password,
        body.license_key,
        _context(request, hwid=body.hwid, version=body.version),
        email=body.email,
    )
    if not outcome.success:
        payload = RegisterResponse(
            success=False,
            message=outcome.message,
            reason=outcome.reason.value if outcome.reason is not None else None,
        )
        return JSONResponse(status_code=_denial_status(outcome.reason), content=payload.model_dump(mode="json"))

    assert outcome.user is not None
    payload = RegisterResponse(success=True, message=outcome.message, user=UserResponse.from_user(outcome.user))
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=payload.model_dump(mode="json"))


@router.post("/heartbeat", response_model=SessionResponse)
async def heartbeat(
    body: SessionRequest,
    api_key: ApiKeyHeader,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Refresh a session's last-activity timestamp."""
    if await orchestrator.heartbeat(api_key, body.session_token):
        return JSONResponse(content=SessionResponse(success=True, message="Session refreshed.").model_dump())
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content=SessionResponse(success=False, message=_SESSION_INVALID).model_dump(),
    )


@router.post("/logout", response_model=SessionResponse)
async def logout(
    body: SessionRequest,
    request: Request,
    api_key: ApiKeyHeader,
    orchestrator: OrchestratorDep,
) -> JSONResponse:
    """Close a session."""
    if await orchestrator.logout(api_key, body.session_token, _context(request)):
        return JSONResponse(content=SessionResponse(success=True, message="Logged out.").model_dump())
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content=SessionResponse(success=False, message=_SESSION_INVALID).model_dump(),
    )
