from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from msusers.api.schemas import (
    AccessGrantResponse,
    AzureCallbackRequest,
    Envelope,
    GrantAccessRequest,
    GrantSummary,
    HospitalResponse,
    HospitalWithProfilesResponse,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    SelectHospitalRequest,
    SelectHospitalResponse,
    TokenInfoResponse,
    TokenPairResponse,
    UpdateProfileRequest,
    UserDetailResponse,
    UserResponse,
)
from msusers.logging import get_logger
from msusers.service.runtime import get_runtime
from msusers.service.sessions import AuthorizationCode, ProviderAccessToken
from msusers.service.tokens import TokenClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/users")


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


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> str:
    _, _, token = (authorization or "").partition(" ")
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenClaims:
    return get_runtime().sessions.authenticate(authorization)


def _user_detail(user, grants) -> dict:
    base = UserResponse.from_user(user).model_dump()
    return UserDetailResponse(
        **base, hospitals=[GrantSummary.from_grant(g) for g in grants]
    ).dump()


# auth


@router.post("/auth/azure/callback", response_model=Envelope, tags=["auth"])
async def azure_callback(body: AzureCallbackRequest, request: Request):
    """Exchange an Azure AD credential for internal tokens.

    Accepts either an authorization ``code`` or an ``azureAccessToken`` the
    client obtained itself (with an optional ``azureIdToken``).
    """
    runtime = get_runtime()
    if body.code:
        credential = AuthorizationCode(body.code)
    else:
        credential = ProviderAccessToken(body.azure_access_token, body.azure_id_token)
    result = await runtime.sessions.login(
        credential,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.expires_in,
            user=UserResponse.from_user(result.user),
            hospitals=[GrantSummary.from_grant(g) for g in result.grants],
        ).dump(),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    pair = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=pair.access_token, refresh_token=pair.refresh_token
        ).dump(),
    )


@router.post("/auth/select-hospital", response_model=Envelope, tags=["auth"])
async def select_hospital(
    body: SelectHospitalRequest,
    request: Request,
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    selection = await runtime.sessions.select_hospital(
        principal.user_id,
        body.hospital_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(
        status="ok",
        data=SelectHospitalResponse(
            access_token=selection.context_token,
            context_token=selection.context_token,
            redirect_url=selection.redirect_url,
            hospital=HospitalResponse.from_hospital(selection.hospital),
            profiles=[ProfileResponse.from_profile(p) for p in selection.profiles],
        ).dump(),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    principal: TokenClaims = Depends(get_principal),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.sessions.logout(
        principal.user_id,
        _bearer_token(authorization),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return Envelope(status="ok", data=MessageResponse(message="logged out").dump())


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def token_info(principal: TokenClaims = Depends(get_principal)):
    return Envelope(status="ok", data=TokenInfoResponse.from_claims(principal).dump())


# users


@router.get("/me", response_model=Envelope, tags=["users"])
async def get_me(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    user, grants = runtime.users.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_detail(user, grants))


@router.put("/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: UpdateProfileRequest, principal: TokenClaims = Depends(get_principal)
):
    runtime = get_runtime()
    user = runtime.users.update_profile(
        principal.user_id, name=body.name, phone=body.phone, avatar=body.avatar
    )
    return Envelope(status="ok", data=UserResponse.from_user(user).dump())


@router.get("/me/hospitals", response_model=Envelope, tags=["users"])
async def list_my_hospitals(principal: TokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    hospitals = runtime.users.list_user_hospitals(principal.user_id)
    data = []
    for entry in hospitals:
        base = HospitalResponse.from_hospital(entry.hospital).model_dump()
        data.append(
            HospitalWithProfilesResponse(
                **base,
                profiles=[ProfileResponse.from_profile(p) for p in entry.profiles],
            ).dump()
        )
    return Envelope(status="ok", data=data)


@router.get("", response_model=Envelope, tags=["users"])
async def list_users(
    is_active: Optional[bool] = Query(None, alias="isActive"),
    hospital_id: Optional[str] = Query(None, alias="hospitalId"),
    profile_id: Optional[str] = Query(None, alias="profileId"),
    limit: int = Query(100, ge=1, le=500),
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    rows = runtime.users.list_users(
        is_active=is_active,
        hospital_id=hospital_id,
        profile_id=profile_id,
        limit=limit,
    )
    return Envelope(
        status="ok", data=[_user_detail(user, grants) for user, grants in rows]
    )


@router.post("/{user_id}/grant-access", response_model=Envelope, tags=["users"])
async def grant_access(
    body: GrantAccessRequest,
    user_id: str = Path(..., min_length=1),
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    grant = runtime.grants.grant(
        user_id, body.hospital_id, body.profile_id, granted_by=principal.user_id
    )
    return Envelope(status="ok", data=AccessGrantResponse.from_grant(grant).dump())


@router.post("/{user_id}/revoke-access", response_model=Envelope, tags=["users"])
async def revoke_access(
    body: GrantAccessRequest,
    user_id: str = Path(..., min_length=1),
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    grant = runtime.grants.revoke(
        user_id, body.hospital_id, body.profile_id, revoked_by=principal.user_id
    )
    return Envelope(status="ok", data=AccessGrantResponse.from_grant(grant).dump())


@router.post("/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., min_length=1),
    principal: TokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    if user_id == principal.user_id:
        raise _http_error("validation_error", "cannot deactivate yourself", status_code=400)
    user = runtime.users.deactivate_user(user_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user).dump())
