from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from msusers.logging import get_logger
from msusers.storage.errors import ConstraintViolation
from msusers.storage.models import (
    AccessGrant,
    AuditLogEntry,
    Hospital,
    Profile,
    Session,
    User,
    new_id,
    utcnow,
)

_USER_EDITABLE = {"name", "phone", "avatar"}

DEFAULT_PROFILES = (
    Profile(
        id="profile_gerencial_001",
        code="GERENCIAL",
        name="Gestor/Diretor",
        description="Gestores e diretores hospitalares: dashboard executivo e IA especializada",
        allowed_modules=["gerencial"],
        permissions={
            "viewDashboard": True,
            "accessAI": True,
            "viewReports": True,
            "manageContracts": True,
        },
    ),
    Profile(
        id="profile_auditor_002",
        code="AUDITOR",
        name="Auditor Médico",
        description="Auditores médicos: sistema de auditoria e enquadramento de porte",
        allowed_modules=["auditor", "gerencial"],
        permissions={
            "viewPatients": True,
            "auditProcedures": True,
            "approveReject": True,
            "viewReports": True,
        },
    ),
    Profile(
        id="profile_analista_003",
        code="ANALISTA",
        name="Analista de Conformidade",
        description="Analistas de checklist de documentação e validação de XMLs",
        allowed_modules=["analista"],
        permissions={
            "validateXML": True,
            "checkDocuments": True,
            "managePendencies": True,
        },
    ),
)

DEFAULT_HOSPITALS = (
    Hospital(
        id="hospital_h9j_001",
        code="h9j",
        name="Hospital 9 de Julho",
        cnpj="61.600.839/0001-55",
        subdomain="h9j-lazarus",
        logo_url="https://cdn.hospital9dejulho.com.br/logo.png",
        primary_color="#1E40AF",
    ),
    Hospital(
        id="hospital_hsl_002",
        code="hsl",
        name="Hospital Sírio-Libanês",
        cnpj="62.780.278/0001-00",
        subdomain="hsl-lazarus",
        logo_url="https://cdn.hospitalsiriolibanes.org.br/logo.png",
        primary_color="#0F766E",
    ),
    Hospital(
        id="hospital_demo_003",
        code="demo",
        name="Hospital Demo (Testes)",
        cnpj="00.000.000/0001-00",
        subdomain="demo-lazarus",
        primary_color="#7C3AED",
    ),
)


class MemoryStore:
    """In-process backing store used for tests and local development.

    Every mutation runs under one re-entrant lock, so find-or-create and
    create-or-reactivate are single critical sections. When ``fs_root`` is
    given the state is mirrored to ``<fs_root>/state/memory_store.json``.
    """

    def __init__(self, fs_root: str | None = None, *, seed_defaults: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.hospitals: Dict[str, Hospital] = {}
        self.profiles: Dict[str, Profile] = {}
        self.grants: Dict[str, AccessGrant] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        loaded = False
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            loaded = self._load_state()
        if not loaded and seed_defaults:
            self.default_catalog()
            self._persist_state()

    def default_catalog(self) -> None:
        """Install the same profiles and hospitals as ``sql/002_seed.sql``."""
        for profile in DEFAULT_PROFILES:
            self.profiles.setdefault(
                profile.id,
                replace(
                    profile,
                    allowed_modules=list(profile.allowed_modules),
                    permissions=dict(profile.permissions),
                ),
            )
        for hospital in DEFAULT_HOSPITALS:
            self.hospitals.setdefault(hospital.id, replace(hospital))

    # users
    def upsert_user_by_external_id(
        self,
        external_id: str,
        *,
        email: str,
        name: str,
        external_tenant_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            existing = next(
                (u for u in self.users.values() if u.external_id == external_id), None
            )
            now = utcnow()
            if existing:
                existing.updated_at = now
                self._persist_state()
                return existing
            if any(u.email == email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                name=name,
                email=email,
                external_id=external_id,
                external_tenant_id=external_tenant_id,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_EDITABLE
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def list_users(
        self,
        *,
        is_active: Optional[bool] = None,
        hospital_id: Optional[str] = None,
        profile_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[User]:
        with self._data_lock:
            results = []
            for user in self.users.values():
                if is_active is not None and user.is_active != is_active:
                    continue
                if hospital_id or profile_id:
                    matched = any(
                        g.user_id == user.id
                        and g.is_active
                        and (not hospital_id or g.hospital_id == hospital_id)
                        and (not profile_id or g.profile_id == profile_id)
                        for g in self.grants.values()
                    )
                    if not matched:
                        continue
                results.append(user)
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    # access grants
    def list_active_grants(
        self, user_id: str, hospital_id: Optional[str] = None
    ) -> List[AccessGrant]:
        with self._data_lock:
            rows = [
                g
                for g in self.grants.values()
                if g.user_id == user_id
                and g.is_active
                and (hospital_id is None or g.hospital_id == hospital_id)
            ]
            rows.sort(key=lambda g: g.granted_at)
            return [self._joined(g) for g in rows]

    def upsert_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, granted_by: str
    ) -> Tuple[AccessGrant, str]:
        """Create, reactivate, or return the grant for the triple.

        Returns the grant and one of ``created``, ``reactivated`` or ``unchanged``.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("unknown user", {"field": "user_id"})
            if hospital_id not in self.hospitals:
                raise ConstraintViolation("unknown hospital", {"field": "hospital_id"})
            if profile_id not in self.profiles:
                raise ConstraintViolation("unknown profile", {"field": "profile_id"})
            existing = self._find_grant(user_id, hospital_id, profile_id)
            if existing and existing.is_active:
                return self._joined(existing), "unchanged"
            if existing:
                existing.is_active = True
                existing.granted_by = granted_by
                existing.granted_at = utcnow()
                existing.revoked_by = None
                existing.revoked_at = None
                self._persist_state()
                return self._joined(existing), "reactivated"
            grant = AccessGrant(
                id=new_id(),
                user_id=user_id,
                hospital_id=hospital_id,
                profile_id=profile_id,
                granted_by=granted_by,
            )
            self.grants[grant.id] = grant
            self._persist_state()
            return self._joined(grant), "created"

    def revoke_grant(
        self, user_id: str, hospital_id: str, profile_id: str, *, revoked_by: str
    ) -> Optional[AccessGrant]:
        with self._data_lock:
            existing = self._find_grant(user_id, hospital_id, profile_id)
            if not existing or not existing.is_active:
                return None
            existing.is_active = False
            existing.revoked_by = revoked_by
            existing.revoked_at = utcnow()
            self._persist_state()
            return self._joined(existing)

    def _find_grant(
        self, user_id: str, hospital_id: str, profile_id: str
    ) -> Optional[AccessGrant]:
        key = (user_id, hospital_id, profile_id)
        return next((g for g in self.grants.values() if g.key == key), None)

    def _joined(self, grant: AccessGrant) -> AccessGrant:
        return replace(
            grant,
            hospital=self.hospitals.get(grant.hospital_id),
            profile=self.profiles.get(grant.profile_id),
        )

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]

    def deactivate_sessions(
        self, user_id: str, access_token: Optional[str] = None
    ) -> int:
        """Deactivate the user's active sessions, optionally only those bound to ``access_token``."""
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if session.user_id != user_id or not session.is_active:
                    continue
                if access_token is not None and session.access_token != access_token:
                    continue
                session.is_active = False
                count += 1
            if count:
                self._persist_state()
            return count

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)
            self._persist_state()

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [_dump(u) for u in self.users.values()],
            "hospitals": [_dump(h) for h in self.hospitals.values()],
            "profiles": [_dump(p) for p in self.profiles.values()],
            "grants": [
                _dump(replace(g, hospital=None, profile=None))
                for g in self.grants.values()
            ],
            "sessions": [_dump(s) for s in self.sessions.values()],
            "audit_log": [_dump(e) for e in self.audit_log],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: _load(User, u) for u in data.get("users", [])}
        self.hospitals = {h["id"]: _load(Hospital, h) for h in data.get("hospitals", [])}
        self.profiles = {p["id"]: _load(Profile, p) for p in data.get("profiles", [])}
        self.grants = {g["id"]: _load(AccessGrant, g) for g in data.get("grants", [])}
        self.sessions = {s["id"]: _load(Session, s) for s in data.get("sessions", [])}
        self.audit_log = [_load(AuditLogEntry, e) for e in data.get("audit_log", [])]
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True


def _dump(obj: Any) -> dict:
    data = asdict(obj)
    data.pop("hospital", None)
    data.pop("profile", None)
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in data.items()}


def _load(cls, data: dict):
    values = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        raw = data[f.name]
        if isinstance(raw, str) and f.name.endswith(("_at",)):
            raw = datetime.fromisoformat(raw)
        values[f.name] = raw
    return cls(**values)


__all__ = ["MemoryStore"]
