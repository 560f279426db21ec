from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from msusers.service.tokens import TokenClaims
from msusers.storage.models import AccessGrant, Hospital, Profile, User

MAX_TOKEN_LENGTH = 16384

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "external_auth_failed",
    "missing_identity_id",
    "user_inactive",
    "forbidden",
    "no_access_to_tenant",
    "not_found",
    "grant_not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# requests


class AzureCallbackRequest(CamelModel):
    code: Optional[str] = Field(None, min_length=1, max_length=MAX_TOKEN_LENGTH)
    azure_access_token: Optional[str] = Field(
        None, min_length=1, max_length=MAX_TOKEN_LENGTH
    )
    azure_id_token: Optional[str] = Field(None, max_length=MAX_TOKEN_LENGTH)

    @model_validator(mode="after")
    def _require_credential(self) -> "AzureCallbackRequest":
        if not self.code and not self.azure_access_token:
            raise ValueError("either code or azureAccessToken is required")
        return self


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class SelectHospitalRequest(CamelModel):
    hospital_id: str = Field(..., min_length=1, max_length=255)


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    avatar: Optional[str] = Field(None, max_length=2048)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class GrantAccessRequest(CamelModel):
    hospital_id: str = Field(..., min_length=1, max_length=255)
    profile_id: str = Field(..., min_length=1, max_length=255)


# responses


class UserResponse(CamelModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    avatar: Optional[str] = None
    external_tenant_id: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            avatar=user.avatar,
            external_tenant_id=user.external_tenant_id,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class HospitalResponse(CamelModel):
    id: str
    code: str
    name: str
    cnpj: str
    subdomain: str
    custom_domain: Optional[str] = None
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    is_active: bool

    @classmethod
    def from_hospital(cls, hospital: Hospital) -> "HospitalResponse":
        return cls(
            id=hospital.id,
            code=hospital.code,
            name=hospital.name,
            cnpj=hospital.cnpj,
            subdomain=hospital.subdomain,
            custom_domain=hospital.custom_domain,
            logo_url=hospital.logo_url,
            primary_color=hospital.primary_color,
            is_active=hospital.is_active,
        )


class ProfileResponse(CamelModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    allowed_modules: List[str] = Field(default_factory=list)
    # opaque to this service; keys are not camel-cased
    permissions: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            code=profile.code,
            name=profile.name,
            description=profile.description,
            allowed_modules=list(profile.allowed_modules),
            permissions=dict(profile.permissions),
        )


class GrantSummary(CamelModel):
    hospital: HospitalResponse
    profile: ProfileResponse

    @classmethod
    def from_grant(cls, grant: AccessGrant) -> "GrantSummary":
        return cls(
            hospital=HospitalResponse.from_hospital(grant.hospital),
            profile=ProfileResponse.from_profile(grant.profile),
        )


class AccessGrantResponse(CamelModel):
    id: str
    user_id: str
    hospital_id: str
    profile_id: str
    is_active: bool
    granted_by: str
    granted_at: datetime
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: AccessGrant) -> "AccessGrantResponse":
        return cls(
            id=grant.id,
            user_id=grant.user_id,
            hospital_id=grant.hospital_id,
            profile_id=grant.profile_id,
            is_active=grant.is_active,
            granted_by=grant.granted_by,
            granted_at=grant.granted_at,
            revoked_by=grant.revoked_by,
            revoked_at=grant.revoked_at,
        )


class LoginResponse(CamelModel):
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserResponse
    hospitals: List[GrantSummary]


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str


class SelectHospitalResponse(CamelModel):
    # accessToken and contextToken carry the same context-bound token
    access_token: str
    context_token: str
    redirect_url: str
    hospital: HospitalResponse
    profiles: List[ProfileResponse]


class TokenInfoResponse(CamelModel):
    user_id: str
    email: str
    token_type: str
    hospital_id: Optional[str] = None
    hospital_code: Optional[str] = None
    profiles: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "TokenInfoResponse":
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            token_type=claims.kind,
            hospital_id=claims.hospital_id,
            hospital_code=claims.hospital_code,
            profiles=list(claims.profiles),
            expires_at=claims.expires_at,
        )


class UserDetailResponse(UserResponse):
    hospitals: List[GrantSummary] = Field(default_factory=list)


class HospitalWithProfilesResponse(HospitalResponse):
    profiles: List[ProfileResponse] = Field(default_factory=list)


class MessageResponse(CamelModel):
    message: str
