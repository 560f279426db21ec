"""Access grant service and account resolver tests."""

import pytest

from msusers.service import audit
from msusers.service.accounts import AccountResolver
from msusers.service.audit import AuditLogger
from msusers.service.errors import GrantNotFound
from msusers.service.grants import AccessGrantService
from msusers.service.identity import ExternalIdentity
from msusers.storage.errors import ConstraintViolation
from msusers.storage.memory import MemoryStore

DEMO = "hospital_demo_003"
AUDITOR = "profile_auditor_002"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def grants(store):
    return AccessGrantService(store, AuditLogger(store))


@pytest.fixture
def user(store):
    return AccountResolver(store).resolve(
        ExternalIdentity(external_id="oid-1", email="ana@example.com")
    )


class TestAccountResolver:
    def test_first_resolution_creates_user(self, store):
        resolver = AccountResolver(store)
        user = resolver.resolve(
            ExternalIdentity(
                external_id="oid-9",
                email="bia@example.com",
                display_name="Bia",
                external_tenant_id="tid-1",
            )
        )
        assert user.name == "Bia"
        assert user.external_tenant_id == "tid-1"
        assert user.is_active is True

    def test_name_defaults_to_email(self, user):
        assert user.name == "ana@example.com"

    def test_repeat_resolution_returns_same_user(self, store, user):
        again = AccountResolver(store).resolve(
            ExternalIdentity(external_id="oid-1", email="ana@example.com")
        )
        assert again.id == user.id
        assert len(store.users) == 1

    def test_email_clash_surfaces_as_conflict(self, store, user):
        with pytest.raises(ConstraintViolation):
            AccountResolver(store).resolve(
                ExternalIdentity(external_id="oid-2", email="ana@example.com")
            )


class TestAccessGrantService:
    def test_grant_is_idempotent_and_audited_once(self, store, grants, user):
        first = grants.grant(user.id, DEMO, AUDITOR, granted_by="admin-1")
        second = grants.grant(user.id, DEMO, AUDITOR, granted_by="admin-1")

        assert first.id == second.id
        assert first.hospital.code == "demo"
        entries = [e for e in store.audit_log if e.action == audit.GRANT_ACCESS]
        assert len(entries) == 1
        assert entries[0].user_id == "admin-1"
        assert entries[0].metadata["targetUserId"] == user.id
        assert entries[0].metadata["outcome"] == "created"

    def test_revoke_and_reactivate(self, store, grants, user):
        original = grants.grant(user.id, DEMO, AUDITOR, granted_by="admin-1")
        grants.revoke(user.id, DEMO, AUDITOR, revoked_by="admin-2")
        assert grants.list_active_grants(user.id) == []

        restored = grants.grant(user.id, DEMO, AUDITOR, granted_by="admin-3")

        assert restored.id == original.id
        assert restored.is_active is True
        actions = [e.action for e in store.audit_log]
        assert actions == [audit.GRANT_ACCESS, audit.REVOKE_ACCESS, audit.GRANT_ACCESS]
        assert store.audit_log[-1].metadata["outcome"] == "reactivated"

    def test_revoke_without_active_grant(self, grants, user):
        with pytest.raises(GrantNotFound):
            grants.revoke(user.id, DEMO, AUDITOR, revoked_by="admin-1")

    def test_grant_to_unknown_hospital_conflicts(self, grants, user):
        with pytest.raises(ConstraintViolation):
            grants.grant(user.id, "hospital_nowhere", AUDITOR, granted_by="admin-1")

    def test_audit_failure_does_not_undo_grant(self, store, grants, user, monkeypatch):
        def broken(entry):
            raise RuntimeError("audit table locked")

        monkeypatch.setattr(store, "append_audit_entry", broken)

        grant = grants.grant(user.id, DEMO, AUDITOR, granted_by="admin-1")

        assert grant.is_active is True
        assert len(grants.list_active_grants(user.id)) == 1
