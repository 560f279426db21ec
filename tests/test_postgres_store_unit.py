"""PostgresStore behaviour that can be checked without a database.

The pool is replaced by a scripted fake so each test controls the rows a
query returns or the driver error it raises.
"""

from contextlib import contextmanager
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from msusers.logging import get_logger
from msusers.storage.errors import ConstraintViolation, StoreUnavailable
from msusers.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results, error=None):
        self.conn = FakeConnection(results)
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit"
    store.pool = pool
    store.logger = get_logger("test")
    return store


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "name": "Ana",
        "email": "ana@example.com",
        "external_id": "oid-1",
        "external_tenant_id": "tid-1",
        "phone": None,
        "avatar": None,
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


def _grant_row(**overrides):
    row = {
        "id": "grant-1",
        "user_id": "user-1",
        "hospital_id": "hospital_demo_003",
        "profile_id": "profile_auditor_002",
        "is_active": True,
        "granted_by": "admin",
        "granted_at": NOW,
        "revoked_by": None,
        "revoked_at": None,
        "h_id": "hospital_demo_003",
        "h_code": "demo",
        "h_name": "Hospital Demo (Testes)",
        "h_cnpj": "00.000.000/0001-00",
        "h_subdomain": "demo-lazarus",
        "h_custom_domain": None,
        "h_external_tenant_id": None,
        "h_logo_url": None,
        "h_primary_color": "#7C3AED",
        "h_is_active": True,
        "h_created_at": NOW,
        "h_updated_at": NOW,
        "p_id": "profile_auditor_002",
        "p_code": "AUDITOR",
        "p_name": "Auditor Médico",
        "p_description": None,
        "p_allowed_modules": ["auditor", "gerencial"],
        "p_permissions": '{"viewPatients": true, "auditProcedures": true}',
        "p_is_active": True,
        "p_created_at": NOW,
        "p_updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestConnectionErrors:
    @pytest.mark.parametrize(
        "error", [psycopg.OperationalError("server closed"), PoolTimeout("no conn")]
    )
    def test_driver_failures_become_store_unavailable(self, error):
        store = _store(FakePool(error=error))
        with pytest.raises(StoreUnavailable) as excinfo:
            store.get_user("user-1")
        assert excinfo.value.operation == "get_user"
        assert excinfo.value.__cause__ is error

    def test_missing_schema_fails_fast(self):
        store = _store(
            FakePool(*[FakeCursor([{"oid": "x"}])] * 5, FakeCursor([{"oid": None}]))
        )
        with pytest.raises(RuntimeError, match="audit_log"):
            store._verify_required_schema()


class TestUsers:
    def test_upsert_maps_row(self):
        pool = FakePool(FakeCursor([_user_row()]))
        user = _store(pool).upsert_user_by_external_id(
            "oid-1", email="ana@example.com", name="Ana", external_tenant_id="tid-1"
        )
        assert user.id == "user-1"
        assert user.external_tenant_id == "tid-1"
        sql, params = pool.conn.statements[0]
        assert "ON CONFLICT (external_id)" in sql
        assert params[1:] == ("Ana", "ana@example.com", "oid-1", "tid-1")

    def test_email_unique_violation_is_constraint_violation(self):
        pool = FakePool(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation):
            _store(pool).upsert_user_by_external_id(
                "oid-2", email="ana@example.com", name="Ana"
            )

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValueError):
            _store(FakePool()).update_user("user-1", email="x@example.com")

    def test_list_users_builds_filters(self):
        pool = FakePool(FakeCursor([_user_row()]))
        _store(pool).list_users(is_active=True, hospital_id="hospital_demo_003", limit=5)
        sql, params = pool.conn.statements[0]
        assert "u.is_active = %s" in sql
        assert "g.hospital_id = %s" in sql
        assert params == [True, "hospital_demo_003", 5]


class TestGrants:
    def test_joined_row_mapping(self):
        pool = FakePool(FakeCursor([_grant_row()]))
        grants = _store(pool).list_active_grants("user-1", "hospital_demo_003")
        grant = grants[0]
        assert grant.hospital.subdomain == "demo-lazarus"
        assert grant.profile.code == "AUDITOR"
        assert grant.profile.permissions == {"viewPatients": True, "auditProcedures": True}
        assert list(grant.profile.permissions) == ["viewPatients", "auditProcedures"]

    @pytest.mark.parametrize(
        "returned,outcome",
        [
            ([{"inserted": True}], "created"),
            ([{"inserted": False}], "reactivated"),
            ([], "unchanged"),
        ],
    )
    def test_upsert_outcomes(self, returned, outcome):
        pool = FakePool(FakeCursor(returned), FakeCursor([_grant_row()]))
        grant, got = _store(pool).upsert_grant(
            "user-1", "hospital_demo_003", "profile_auditor_002", granted_by="admin"
        )
        assert got == outcome
        assert grant.id == "grant-1"

    def test_revoke_without_active_row(self):
        pool = FakePool(FakeCursor([]))
        assert (
            _store(pool).revoke_grant(
                "user-1", "hospital_demo_003", "profile_auditor_002", revoked_by="x"
            )
            is None
        )


class TestSessions:
    def test_deactivate_by_token_returns_rowcount(self):
        pool = FakePool(FakeCursor(rowcount=1))
        assert _store(pool).deactivate_sessions("user-1", "tok-a") == 1
        sql, params = pool.conn.statements[0]
        assert sql.endswith("AND access_token = %s")
        assert params == ["user-1", "tok-a"]
