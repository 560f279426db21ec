from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from msusers.logging import get_logger
from msusers.storage.errors import ConstraintViolation, StoreUnavailable
from msusers.storage.models import (
    AccessGrant,
    AuditLogEntry,
    Hospital,
    Profile,
    Session,
    User,
)

_USER_COLS = (
    "id",
    "name",
    "email",
    "external_id",
    "external_tenant_id",
    "phone",
    "avatar",
    "is_active",
    "created_at",
    "updated_at",
)
_HOSPITAL_COLS = (
    "id",
    "code",
    "name",
    "cnpj",
    "subdomain",
    "custom_domain",
    "external_tenant_id",
    "logo_url",
    "primary_color",
    "is_active",
    "created_at",
    "updated_at",
)
_PROFILE_COLS = (
    "id",
    "code",
    "name",
    "description",
    "allowed_modules",
    "permissions",
    "is_active",
    "created_at",
    "updated_at",
)
_GRANT_COLS = (
    "id",
    "user_id",
    "hospital_id",
    "profile_id",
    "is_active",
    "granted_by",
    "granted_at",
    "revoked_by",
    "revoked_at",
)

# grant rows joined with their hospital and profile, columns prefixed h_ / p_
_GRANT_SELECT = "SELECT {grant}, {hospital}, {profile} FROM user_hospital_profile g JOIN hospital h ON h.id = g.hospital_id JOIN profile p ON p.id = g.profile_id".format(
    grant=", ".join(f"g.{c}" for c in _GRANT_COLS),
    hospital=", ".join(f"h.{c} AS h_{c}" for c in _HOSPITAL_COLS),
    profile=", ".join(f"p.{c} AS p_{c}" for c in _PROFILE_COLS),
)

_USER_EDITABLE = {"name", "phone", "avatar"}


class PostgresStore:
    """Postgres-backed store for users, tenants, grants, sessions and audit rows."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(operation) from exc

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema from ``sql/001_schema.sql`` is not installed."""

        required_tables = [
            "app_user",
            "hospital",
            "profile",
            "user_hospital_profile",
            "user_session",
            "audit_log",
        ]
        with self._connect("verify_schema") as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def upsert_user_by_external_id(
        self,
        external_id: str,
        *,
        email: str,
        name: str,
        external_tenant_id: Optional[str] = None,
    ) -> User:
        try:
            with self._connect("upsert_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, external_id, external_tenant_id)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (external_id) DO UPDATE SET updated_at = now()
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, email, external_id, external_tenant_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect("get_user") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_EDITABLE
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        if not changes:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in changes)
        with self._connect("update_user") as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*changes.values(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect("set_user_active") as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        is_active: Optional[bool] = None,
        hospital_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        clauses: list[str] = []
        params: list[Any] = []
        if is_active is not None:
            clauses.append("u.is_active = %s")
            params.append(is_active)
        if hospital_id or profile_id:
            grant_clauses = ["g.user_id = u.id", "g.is_active"]
            if hospital_id:
                grant_clauses.append("g.hospital_id = %s")
                params.append(hospital_id)
            if profile_id:
                grant_clauses.append("g.profile_id = %s")
                params.append(profile_id)
            clauses.append(
                "EXISTS (SELECT 1 FROM user_hospital_profile g WHERE {})".format(
                    " AND ".join(grant_clauses)
                )
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect("list_users") as conn:
            rows = conn.execute(
                f"SELECT u.* FROM app_user u {where} ORDER BY u.created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # access grants
    def list_active_grants(
        self, user_id: str, hospital_id: Optional[str] = None
    ) -> List[AccessGrant]:
        query = f"{_GRANT_SELECT} WHERE g.user_id = %s AND g.is_active"
        params: list[Any] = [user_id]
        if hospital_id is not None:
            query += " AND g.hospital_id = %s"
            params.append(hospital_id)
        query += " ORDER BY g.granted_at"
        with self._connect("list_active_grants") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def upsert_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, granted_by: str
    ) -> Tuple[AccessGrant, str]:
        """Create, reactivate, or return the grant for the triple in one statement."""
        try:
            with self._connect("upsert_grant") as conn:
                changed = conn.execute(
                    """
                    INSERT INTO user_hospital_profile (id, user_id, hospital_id, profile_id, granted_by)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, hospital_id, profile_id) DO UPDATE
                    SET is_active = true,
                        granted_by = EXCLUDED.granted_by,
                        granted_at = now(),
                        revoked_by = NULL,
                        revoked_at = NULL
                    WHERE user_hospital_profile.is_active = false
                    RETURNING (xmax = 0) AS inserted
                    """,
                    (str(uuid.uuid4()), user_id, hospital_id, profile_id, granted_by),
                ).fetchone()
                row = conn.execute(
                    f"{_GRANT_SELECT} WHERE g.user_id = %s AND g.hospital_id = %s AND g.profile_id = %s",
                    (user_id, hospital_id, profile_id),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "unknown user, hospital or profile", {"constraint": exc.diag.constraint_name}
            )
        if changed is None:
            outcome = "unchanged"
        else:
            outcome = "created" if changed["inserted"] else "reactivated"
        return self._grant_from_row(row), outcome

    def revoke_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, revoked_by: str
    ) -> Optional[AccessGrant]:
        with self._connect("revoke_grant") as conn:
            updated = conn.execute(
                """
                UPDATE user_hospital_profile
                SET is_active = false, revoked_by = %s, revoked_at = now()
                WHERE user_id = %s AND hospital_id = %s AND profile_id = %s AND is_active
                RETURNING id
                """,
                (revoked_by, user_id, hospital_id, profile_id),
            ).fetchone()
            if not updated:
                return None
            row = conn.execute(
                f"{_GRANT_SELECT} WHERE g.id = %s", (updated["id"],)
            ).fetchone()
        return self._grant_from_row(row)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._connect("create_session") as conn:
            conn.execute(
                """
                INSERT INTO user_session (id, user_id, hospital_id, access_token, expires_at,
                    ip_address, user_agent, is_active, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.hospital_id,
                    session.access_token,
                    session.expires_at,
                    session.ip_address,
                    session.user_agent,
                    session.is_active,
                    session.created_at,
                ),
            )
        return session

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        query = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect("list_sessions") as conn:
            rows = conn.execute(query + " ORDER BY created_at", (user_id,)).fetchall()
        return [
            Session(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                hospital_id=str(row["hospital_id"]),
                access_token=row["access_token"],
                created_at=row["created_at"],
                expires_at=row["expires_at"],
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                is_active=row["is_active"],
            )
            for row in rows
        ]

    def deactivate_sessions(
        self, user_id: str, access_token: Optional[str] = None
    ) -> int:
        query = "UPDATE user_session SET is_active = false WHERE user_id = %s AND is_active"
        params: list[Any] = [user_id]
        if access_token is not None:
            query += " AND access_token = %s"
            params.append(access_token)
        with self._connect("deactivate_sessions") as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._connect("append_audit_entry") as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, user_name, user_email, action, description,
                    hospital_id, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.user_name,
                    entry.user_email,
                    entry.action,
                    entry.description,
                    entry.hospital_id,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata),
                    entry.created_at,
                ),
            )

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(**{c: row[c] for c in _USER_COLS})

    @staticmethod
    def _hospital_from_row(row: dict, prefix: str = "") -> Hospital:
        return Hospital(**{c: row[prefix + c] for c in _HOSPITAL_COLS})

    @staticmethod
    def _profile_from_row(row: dict, prefix: str = "") -> Profile:
        values = {c: row[prefix + c] for c in _PROFILE_COLS}
        values["allowed_modules"] = list(values["allowed_modules"] or [])
        permissions = values["permissions"]
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        values["permissions"] = permissions or {}
        return Profile(**values)

    def _grant_from_row(self, row: dict) -> AccessGrant:
        grant = AccessGrant(**{c: row[c] for c in _GRANT_COLS})
        grant.hospital = self._hospital_from_row(row, "h_")
        grant.profile = self._profile_from_row(row, "p_")
        return grant


__all__ = ["PostgresStore"]
