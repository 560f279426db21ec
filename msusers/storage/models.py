from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    name: str
    email: str
    external_id: str
    external_tenant_id: Optional[str] = None
    phone: Optional[str] = None
    avatar: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Hospital:
    """A tenant. ``code`` is the short slug carried inside context tokens."""

    id: str
    code: str
    name: str
    cnpj: str
    subdomain: str
    custom_domain: Optional[str] = None
    external_tenant_id: Optional[str] = None
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Profile:
    """A role. ``permissions`` is opaque and passed to clients untouched."""

    id: str
    code: str
    name: str
    description: Optional[str] = None
    allowed_modules: List[str] = field(default_factory=list)
    permissions: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AccessGrant:
    id: str
    user_id: str
    hospital_id: str
    profile_id: str
    granted_by: str
    is_active: bool = True
    granted_at: datetime = field(default_factory=utcnow)
    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    hospital: Optional[Hospital] = None
    profile: Optional[Profile] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.user_id, self.hospital_id, self.profile_id)


@dataclass
class Session:
    id: str
    user_id: str
    hospital_id: str
    access_token: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        hospital_id: str,
        access_token: str,
        ttl: timedelta,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            hospital_id=hospital_id,
            access_token=access_token,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class AuditLogEntry:
    id: str
    action: str
    description: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    hospital_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
