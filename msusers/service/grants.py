from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from msusers.logging import get_logger
from msusers.service import audit
from msusers.service.audit import AuditLogger
from msusers.service.errors import GrantNotFound
from msusers.storage.models import AccessGrant

logger = get_logger(__name__)


class GrantStore(Protocol):
    def list_active_grants(
        self, user_id: str, hospital_id: Optional[str] = None
    ) -> List[AccessGrant]: ...

    def upsert_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, granted_by: str
    ) -> Tuple[AccessGrant, str]: ...

    def revoke_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, revoked_by: str
    ) -> Optional[AccessGrant]: ...


class AccessGrantService:
    """(user, hospital, profile) grants with soft revocation.

    A triple has at most one row; revoking clears its active flag and a later
    grant reactivates the same row.
    """

    def __init__(self, store: GrantStore, audit_logger: AuditLogger) -> None:
        self.store = store
        self.audit = audit_logger

    def list_active_grants(
        self, user_id: str, hospital_id: Optional[str] = None
    ) -> List[AccessGrant]:
        return self.store.list_active_grants(user_id, hospital_id)

    def grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, granted_by: str
    ) -> AccessGrant:
        grant, outcome = self.store.upsert_grant(
            user_id, hospital_id, profile_id, granted_by=granted_by
        )
        logger.info(
            "access_granted",
            user_id=user_id,
            hospital_id=hospital_id,
            profile_id=profile_id,
            outcome=outcome,
        )
        if outcome != "unchanged":
            self.audit.record(
                audit.GRANT_ACCESS,
                f"Access granted to hospital {hospital_id}",
                user_id=granted_by,
                hospital_id=hospital_id,
                metadata={
                    "targetUserId": user_id,
                    "profileId": profile_id,
                    "outcome": outcome,
                },
            )
        return grant

    def revoke(
        self, user_id: str, hospital_id: str, profile_id: str, *, revoked_by: str
    ) -> AccessGrant:
        grant = self.store.revoke_grant(
            user_id, hospital_id, profile_id, revoked_by=revoked_by
        )
        if grant is None:
            raise GrantNotFound()
        logger.info(
            "access_revoked",
            user_id=user_id,
            hospital_id=hospital_id,
            profile_id=profile_id,
        )
        self.audit.record(
            audit.REVOKE_ACCESS,
            f"Access revoked from hospital {hospital_id}",
            user_id=revoked_by,
            hospital_id=hospital_id,
            metadata={"targetUserId": user_id, "profileId": profile_id},
        )
        return grant
