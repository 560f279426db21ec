from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Collection, List, Optional

from msusers.logging import get_logger
from msusers.service.errors import InvalidToken

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CONTEXT = "context"
TOKEN_KINDS = frozenset({ACCESS, REFRESH, CONTEXT})
# Kinds accepted on authenticated endpoints
BEARER_KINDS = frozenset({ACCESS, CONTEXT})


@dataclass
class TokenClaims:
    user_id: str
    email: str
    kind: str
    hospital_id: Optional[str] = None
    hospital_code: Optional[str] = None
    profiles: List[str] = field(default_factory=list)
    jti: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TokenCodec:
    """HS256 JWT issuing and verification for internal bearer tokens.

    The signing key is read once at construction. Verification is pure: it
    never consults the store, so a token stays valid until it expires even if
    the matching session row is deactivated.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue(self, claims: TokenClaims, ttl: timedelta) -> str:
        if claims.kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {claims.kind}")
        now = self._clock()
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": claims.user_id,
            "email": claims.email,
            "token_type": claims.kind,
            "jti": claims.jti or str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        if claims.hospital_id is not None:
            payload["hospital_id"] = claims.hospital_id
        if claims.hospital_code is not None:
            payload["hospital_code"] = claims.hospital_code
        if claims.profiles:
            payload["profiles"] = list(claims.profiles)
        return self._encode_jwt(payload)

    def verify(self, token: str, kinds: Collection[str]) -> TokenClaims:
        """Decode ``token`` and check it is one of ``kinds``.

        Raises:
            InvalidToken: malformed, badly signed, foreign, expired, or of an
                unexpected kind.
        """
        payload = self._decode_jwt(token)
        kind = payload.get("token_type")
        if kind not in kinds:
            logger.info("token_kind_rejected", kind=kind, accepted=sorted(kinds))
            raise InvalidToken()
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidToken()
        profiles = payload.get("profiles") or []
        return TokenClaims(
            user_id=user_id,
            email=payload.get("email") or "",
            kind=kind,
            hospital_id=payload.get("hospital_id"),
            hospital_code=payload.get("hospital_code"),
            profiles=[str(p) for p in profiles],
            jti=payload.get("jti"),
            issued_at=_from_ts(payload.get("iat")),
            expires_at=_from_ts(payload.get("exp")),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken()

        # reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidToken()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()
        if payload.get("iss") != self.issuer:
            raise InvalidToken()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidToken()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidToken()
        now_ts = self._clock().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            logger.info("token_expired", kind=payload.get("token_type"))
            raise InvalidToken()
        return payload


def _from_ts(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None
