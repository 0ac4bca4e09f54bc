from __future__ import annotations

import json
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from pydantic import ValidationError as PydanticValidationError

from churchregistry.api.schemas import (
    AuthResponse,
    BaptismCreateRequest,
    CommunionCreateRequest,
    ConfirmationCreateRequest,
    Envelope,
    HolyOrderCreateRequest,
    LoginRequest,
    LogoutRequest,
    MarriageCreateRequest,
    PrincipalResponse,
    RefreshRequest,
    StageCreateRequest,
    serialize_record,
    serialize_records,
)
from churchregistry.logging import get_logger
from churchregistry.service.auth import AuthContext, AuthResult
from churchregistry.service.lineage import BIGINT_MAX, BIGINT_MIN
from churchregistry.service.runtime import get_runtime
from churchregistry.service.tokens import Principal
from churchregistry.storage.models import StageKind

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

# URL collection name for each record kind
_COLLECTIONS: Dict[str, StageKind] = {
    "baptisms": StageKind.BAPTISM,
    "communions": StageKind.COMMUNION,
    "confirmations": StageKind.CONFIRMATION,
    "marriages": StageKind.MARRIAGE,
    "holy-orders": StageKind.HOLY_ORDER,
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _kind_for_collection(collection: str) -> StageKind:
    kind = _COLLECTIONS.get(collection)
    if kind is None:
        raise _http_error("not_found", f"unknown collection: {collection}", status_code=404)
    return kind


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_login_throttle(
    runtime, username: str, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count a login attempt for ``username``.

    Raises:
        HTTPException with 429 once the username has used up its window
    """
    decision = await runtime.login_throttle.hit(username)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)

    if response is not None and decision.limit > 0:
        info.apply_headers(response)

    if not decision.allowed:
        logger.info("login_throttled", reset_seconds=decision.reset_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": info.reset_seconds},
        )

    return info


async def get_auth_context(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.resolve_bearer(authorization)


async def get_principal(ctx: AuthContext = Depends(get_auth_context)) -> Principal:
    return ctx.as_principal()


def _auth_payload(result: AuthResult) -> dict:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        username=result.principal.username,
        display_name=result.principal.display_name,
        role=result.principal.role,
        refresh_expires_at=result.refresh_expires_at,
    ).to_json()


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username and password.

    Raises:
        401: If credentials are invalid
        429: If the per-username rate limit is exhausted
    """
    runtime = get_runtime()
    await _enforce_login_throttle(runtime, body.username, response=response)
    result = await runtime.auth.login(body.username, body.password)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    """Trade a refresh token for a new token pair; the old value stops working."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_payload(result))


async def _logout_token(request: Request) -> Optional[str]:
    """Pull the refresh token out of a logout body, or None if it is unusable."""
    try:
        payload = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return LogoutRequest.model_validate(payload).refresh_token
    except PydanticValidationError:
        return None


@router.post(
    "/auth/logout",
    status_code=204,
    response_class=Response,
    tags=["auth"],
    openapi_extra={
        "requestBody": {
            "required": False,
            "content": {"application/json": {"schema": LogoutRequest.model_json_schema()}},
        }
    },
)
async def logout(request: Request):
    """Revoke the presented refresh token. Always answers 204, whatever the body."""
    runtime = get_runtime()
    await runtime.auth.logout(await _logout_token(request))
    return Response(status_code=204)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def current_user(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=ctx.user_id,
            username=ctx.username,
            display_name=ctx.display_name,
            role=ctx.role,
        ).to_json(),
    )


def _create(body: StageCreateRequest, principal: Principal) -> Envelope:
    runtime = get_runtime()
    record = runtime.lineage.create(
        body.kind,
        body.record_fields(),
        principal=principal,
        predecessor_id=body.predecessor_id(),
    )
    return Envelope(status="ok", data=serialize_record(record))


@router.post("/baptisms", response_model=Envelope, status_code=201, tags=["records"])
async def create_baptism(
    body: BaptismCreateRequest, principal: Principal = Depends(get_principal)
):
    return _create(body, principal)


@router.post(
    "/parishes/{parish_id}/baptisms",
    response_model=Envelope,
    status_code=201,
    tags=["records"],
)
async def create_parish_baptism(
    body: BaptismCreateRequest,
    parish_id: int = Path(..., ge=BIGINT_MIN, le=BIGINT_MAX),
    principal: Principal = Depends(get_principal),
):
    """Register a baptism under the parish named in the path."""
    return _create(body.model_copy(update={"parish_id": parish_id}), principal)


@router.post("/communions", response_model=Envelope, status_code=201, tags=["records"])
async def create_communion(
    body: CommunionCreateRequest, principal: Principal = Depends(get_principal)
):
    return _create(body, principal)


@router.post("/confirmations", response_model=Envelope, status_code=201, tags=["records"])
async def create_confirmation(
    body: ConfirmationCreateRequest, principal: Principal = Depends(get_principal)
):
    return _create(body, principal)


@router.post("/marriages", response_model=Envelope, status_code=201, tags=["records"])
async def create_marriage(
    body: MarriageCreateRequest, principal: Principal = Depends(get_principal)
):
    return _create(body, principal)


@router.post("/holy-orders", response_model=Envelope, status_code=201, tags=["records"])
async def create_holy_order(
    body: HolyOrderCreateRequest, principal: Principal = Depends(get_principal)
):
    return _create(body, principal)


@router.get("/baptisms", response_model=Envelope, tags=["records"])
async def search_baptisms(
    q: str = Query(..., min_length=1, max_length=255),
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
):
    """Case-insensitive search over names and addresses."""
    runtime = get_runtime()
    records = runtime.lineage.search_baptisms(q, limit=limit)
    return Envelope(status="ok", data=serialize_records(records))


@router.get("/baptisms/{baptism_id}/lineage", response_model=Envelope, tags=["records"])
async def baptism_lineage(baptism_id: str, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    chain = runtime.lineage.lineage(baptism_id)
    return Envelope(
        status="ok",
        data={
            "baptism": serialize_record(chain.baptism),
            "communion": serialize_record(chain.communion),
            "confirmation": serialize_record(chain.confirmation),
            "marriage": serialize_record(chain.marriage),
            "holyOrder": serialize_record(chain.holy_order),
        },
    )


@router.get("/parishes/{parish_id}/{collection}", response_model=Envelope, tags=["records"])
async def list_parish_records(
    collection: str,
    parish_id: int = Path(..., ge=BIGINT_MIN, le=BIGINT_MAX),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    kind = _kind_for_collection(collection)
    records = runtime.lineage.list_for_parish(kind, parish_id)
    return Envelope(status="ok", data=serialize_records(records))


@router.get("/{collection}/{record_id}", response_model=Envelope, tags=["records"])
async def get_record(
    collection: str, record_id: str, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    kind = _kind_for_collection(collection)
    record = runtime.lineage.get(kind, record_id)
    return Envelope(status="ok", data=serialize_record(record))
