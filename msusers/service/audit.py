from __future__ import annotations

from typing import Any, Optional, Protocol

from msusers.logging import get_logger
from msusers.storage.models import AuditLogEntry, User, new_id

logger = get_logger(__name__)

LOGIN = "LOGIN"
LOGOUT = "LOGOUT"
ACCESS_HOSPITAL = "ACCESS_HOSPITAL"
GRANT_ACCESS = "GRANT_ACCESS"
REVOKE_ACCESS = "REVOKE_ACCESS"
DEACTIVATE_USER = "DEACTIVATE_USER"


class AuditStore(Protocol):
    def append_audit_entry(self, entry: AuditLogEntry) -> None: ...


class AuditLogger:
    """Best-effort writer for the audit trail.

    Called after the primary change has committed. A failed write is logged
    and dropped so it never undoes or fails the operation it describes.
    """

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: str,
        description: str,
        *,
        user: Optional[User] = None,
        user_id: Optional[str] = None,
        hospital_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=new_id(),
            action=action,
            description=description,
            user_id=user.id if user else user_id,
            user_name=user.name if user else None,
            user_email=user.email if user else None,
            hospital_id=hospital_id,
            ip_address=ip_address or "unknown",
            user_agent=user_agent or "unknown",
            metadata=dict(metadata or {}),
        )
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.warning(
                "audit_write_failed", action=action, user_id=entry.user_id, error=str(exc)
            )
            return None
        return entry
