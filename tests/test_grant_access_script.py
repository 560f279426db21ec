"""Tests for the grant_access admin script."""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "scripts"))

from grant_access import change_access  # noqa: E402

from msusers.service.runtime import get_runtime  # noqa: E402

DEMO = "hospital_demo_003"
AUDITOR = "profile_auditor_002"


@pytest.fixture
def user():
    return get_runtime().store.upsert_user_by_external_id(
        "oid-ana", email="ana@example.com", name="Ana"
    )


def test_unknown_user(capsys):
    result = change_access("nobody@example.com", DEMO, AUDITOR)

    assert result["status"] == "unknown_user"
    assert result["user_id"] is None
    assert "must log in once first" in capsys.readouterr().out


def test_dry_run_changes_nothing(user):
    result = change_access("ana@example.com", DEMO, AUDITOR, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().grants.list_active_grants(user.id) == []


def test_grant_and_revoke(user):
    granted = change_access("ana@example.com", DEMO, AUDITOR, actor="ops")
    assert granted == {
        "user_id": user.id,
        "hospital_id": DEMO,
        "profile_id": AUDITOR,
        "status": "granted",
    }
    grants = get_runtime().grants.list_active_grants(user.id)
    assert [g.granted_by for g in grants] == ["ops"]

    revoked = change_access("ana@example.com", DEMO, AUDITOR, revoke=True)
    assert revoked["status"] == "revoked"
    assert get_runtime().grants.list_active_grants(user.id) == []
