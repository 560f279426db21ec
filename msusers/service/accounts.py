from __future__ import annotations

from typing import Optional, Protocol

from msusers.logging import get_logger
from msusers.service.identity import ExternalIdentity
from msusers.storage.models import User

logger = get_logger(__name__)


class AccountStore(Protocol):
    def upsert_user_by_external_id(
        self,
        external_id: str,
        *,
        email: str,
        name: str,
        external_tenant_id: Optional[str] = None,
    ) -> User: ...


class AccountResolver:
    """Maps an external identity onto exactly one internal user."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    def resolve(self, identity: ExternalIdentity) -> User:
        # Find-or-create is a single store operation; concurrent first logins
        # for the same account end up on the same row.
        user = self.store.upsert_user_by_external_id(
            identity.external_id,
            email=identity.email,
            name=identity.display_name or identity.email,
            external_tenant_id=identity.external_tenant_id,
        )
        logger.info("account_resolved", user_id=user.id, external_id=identity.external_id)
        return user
