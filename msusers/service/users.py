from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

from msusers.logging import get_logger
from msusers.service import audit
from msusers.service.audit import AuditLogger
from msusers.service.errors import NotFoundError
from msusers.service.grants import AccessGrantService
from msusers.storage.models import AccessGrant, Hospital, Profile, User

logger = get_logger(__name__)


@dataclass
class UserHospital:
    hospital: Hospital
    profiles: List[Profile] = field(default_factory=list)


class UserDirectoryStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def list_users(
        self,
        *,
        is_active: Optional[bool] = None,
        hospital_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]: ...

    def deactivate_sessions(
        self, user_id: str, access_token: Optional[str] = None
    ) -> int: ...


class UserService:
    def __init__(
        self,
        store: UserDirectoryStore,
        grants: AccessGrantService,
        audit_logger: AuditLogger,
    ) -> None:
        self.store = store
        self.grants = grants
        self.audit = audit_logger

    def get_user(self, user_id: str) -> tuple[User, List[AccessGrant]]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user, self.grants.list_active_grants(user.id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def list_user_hospitals(self, user_id: str) -> List[UserHospital]:
        """Active grants grouped by hospital, in first-granted order."""
        grouped: dict[str, UserHospital] = {}
        for grant in self.grants.list_active_grants(user_id):
            entry = grouped.setdefault(grant.hospital_id, UserHospital(grant.hospital))
            entry.profiles.append(grant.profile)
        return list(grouped.values())

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        changes = {
            key: value
            for key, value in {"name": name, "phone": phone, "avatar": avatar}.items()
            if value is not None
        }
        user = self.store.update_user(user_id, **changes)
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_updated", user_id=user_id, fields=sorted(changes))
        return user

    def list_users(
        self,
        *,
        is_active: Optional[bool] = None,
        hospital_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[tuple[User, List[AccessGrant]]]:
        users = self.store.list_users(
            is_active=is_active,
            hospital_id=hospital_id,
            profile_id=profile_id,
            limit=limit,
        )
        return [(u, self.grants.list_active_grants(u.id)) for u in users]

    def deactivate_user(self, user_id: str, *, actor_id: str) -> User:
        user = self.store.set_user_active(user_id, False)
        if not user:
            raise NotFoundError("user not found")
        closed = self.store.deactivate_sessions(user_id)
        self.audit.record(
            audit.DEACTIVATE_USER,
            "User deactivated",
            user_id=actor_id,
            metadata={"targetUserId": user_id, "sessionsClosed": closed},
        )
        logger.info("user_deactivated", user_id=user_id, sessions_closed=closed)
        return user
