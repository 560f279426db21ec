from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional, Protocol, Union

from msusers.config import Settings
from msusers.logging import get_logger
from msusers.service import audit
from msusers.service.accounts import AccountResolver
from msusers.service.audit import AuditLogger
from msusers.service.errors import (
    AuthenticationError,
    NoAccessToTenant,
    UserInactiveOrMissing,
    ValidationError,
)
from msusers.service.grants import AccessGrantService
from msusers.service.identity import IdentityBridge
from msusers.service.tokens import (
    ACCESS,
    BEARER_KINDS,
    CONTEXT,
    REFRESH,
    TokenClaims,
    TokenCodec,
)
from msusers.storage.models import AccessGrant, Hospital, Profile, Session, User

logger = get_logger(__name__)


@dataclass
class AuthorizationCode:
    code: str


@dataclass
class ProviderAccessToken:
    access_token: str
    id_token: Optional[str] = None


LoginCredential = Union[AuthorizationCode, ProviderAccessToken]


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair
    grants: List[AccessGrant] = field(default_factory=list)


@dataclass
class HospitalSelection:
    context_token: str
    redirect_url: str
    hospital: Hospital
    profiles: List[Profile]
    session: Session


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, session: Session) -> Session: ...

    def deactivate_sessions(
        self, user_id: str, access_token: Optional[str] = None
    ) -> int: ...


class SessionManager:
    """Login, refresh, hospital selection and logout.

    A user moves from unauthenticated to authenticated without a hospital
    (login/refresh tokens carry no tenant), then to authenticated with a
    hospital once :meth:`select_hospital` issues a context token and records
    a session row. Logout deactivates those rows.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        identity: IdentityBridge,
        accounts: AccountResolver,
        grants: AccessGrantService,
        audit_logger: AuditLogger,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.identity = identity
        self.accounts = accounts
        self.grants = grants
        self.audit = audit_logger

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    async def login(
        self,
        credential: LoginCredential,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        if isinstance(credential, AuthorizationCode):
            identity = await self.identity.exchange_code(credential.code)
        elif isinstance(credential, ProviderAccessToken):
            identity = await self.identity.from_access_token(
                credential.access_token, credential.id_token
            )
        else:
            raise ValidationError("unsupported login credential")

        user = self.accounts.resolve(identity)
        if not user.is_active:
            logger.info("login_rejected_inactive", user_id=user.id)
            raise UserInactiveOrMissing()
        grants = self.grants.list_active_grants(user.id)
        tokens = self._issue_pair(user)
        self.audit.record(
            audit.LOGIN,
            "Login via Azure AD SSO",
            user=user,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "azureAdId": user.external_id,
                "tenantId": user.external_tenant_id,
            },
        )
        logger.info("login_succeeded", user_id=user.id, hospitals=len(grants))
        return LoginResult(user=user, tokens=tokens, grants=grants)

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = self.codec.verify(refresh_token, {REFRESH})
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise UserInactiveOrMissing()
        return self._issue_pair(user)

    async def select_hospital(
        self,
        user_id: str,
        hospital_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> HospitalSelection:
        grants = self.grants.list_active_grants(user_id, hospital_id)
        if not grants:
            logger.info("hospital_access_denied", user_id=user_id, hospital_id=hospital_id)
            raise NoAccessToTenant()
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise UserInactiveOrMissing()

        hospital = grants[0].hospital
        profiles = [g.profile for g in grants]
        profile_codes = [p.code for p in profiles]
        context_token = self.codec.issue(
            TokenClaims(
                user_id=user.id,
                email=user.email,
                kind=CONTEXT,
                hospital_id=hospital.id,
                hospital_code=hospital.code,
                profiles=profile_codes,
            ),
            self.access_ttl,
        )
        session = self.store.create_session(
            Session.new(
                user.id,
                hospital.id,
                context_token,
                self.access_ttl,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        self.audit.record(
            audit.ACCESS_HOSPITAL,
            f"Access to hospital: {hospital.name}",
            user=user,
            hospital_id=hospital.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"hospitalCode": hospital.code, "profiles": profile_codes},
        )
        logger.info(
            "hospital_selected",
            user_id=user.id,
            hospital_id=hospital.id,
            session_id=session.id,
        )
        return HospitalSelection(
            context_token=context_token,
            redirect_url=self.redirect_url(hospital),
            hospital=hospital,
            profiles=profiles,
            session=session,
        )

    async def logout(
        self,
        user_id: str,
        token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Deactivate the sessions bound to ``token``; zero matches is not an error."""
        closed = self.store.deactivate_sessions(user_id, token)
        user = self.store.get_user(user_id)
        if user:
            self.audit.record(
                audit.LOGOUT,
                "Logout",
                user=user,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"sessionsClosed": closed},
            )
        logger.info("logout", user_id=user_id, sessions_closed=closed)
        return closed

    def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        if not authorization:
            raise AuthenticationError("authorization required")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("authorization required")
        return self.codec.verify(token.strip(), BEARER_KINDS)

    def redirect_url(self, hospital: Hospital) -> str:
        path = self.settings.hospital_redirect_path
        if hospital.custom_domain:
            return f"https://{hospital.custom_domain}{path}"
        return f"https://{hospital.subdomain}.{self.settings.hospital_base_domain}{path}"

    def _issue_pair(self, user: User) -> TokenPair:
        access = self.codec.issue(
            TokenClaims(user_id=user.id, email=user.email, kind=ACCESS),
            self.access_ttl,
        )
        refresh = self.codec.issue(
            TokenClaims(user_id=user.id, email=user.email, kind=REFRESH),
            self.refresh_ttl,
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
        )
