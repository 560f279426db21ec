from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from msusers.logging import get_logger

logger = get_logger(__name__)

DEFAULT_AZURE_SCOPES = "User.Read openid profile email"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the users service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/msusers", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/msusers", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables test-only helpers such as runtime resets.",
    )
    port: int = env_field(3007, "PORT")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed browser origins",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("ms-users", "JWT_ISSUER")
    jwt_audience: str = env_field("healthchain-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access and context tokens",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    # Azure AD / Microsoft identity platform
    azure_client_id: str | None = env_field(None, "AZURE_CLIENT_ID")
    azure_client_secret: str | None = env_field(None, "AZURE_CLIENT_SECRET")
    azure_tenant_id: str = env_field("common", "AZURE_TENANT_ID")
    azure_authority: str = env_field(
        "https://login.microsoftonline.com/", "AZURE_AUTHORITY"
    )
    azure_redirect_uri: str | None = env_field(None, "AZURE_REDIRECT_URI")
    azure_scopes: str = env_field(DEFAULT_AZURE_SCOPES, "AZURE_SCOPES")
    graph_me_url: str = env_field(
        "https://graph.microsoft.com/v1.0/me", "GRAPH_ME_URL"
    )
    idp_timeout_seconds: float = env_field(
        10.0,
        "IDP_TIMEOUT_SECONDS",
        description="Upper bound for each identity provider call",
    )

    # Tenant redirect
    hospital_base_domain: str = env_field(
        "healthchainsolutions.com.br", "HOSPITAL_BASE_DOMAIN"
    )
    hospital_redirect_path: str = env_field("/modules", "HOSPITAL_REDIRECT_PATH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def azure_token_url(self) -> str:
        authority = self.azure_authority.rstrip("/") + "/"
        return f"{authority}{self.azure_tenant_id}/oauth2/v2.0/token"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTL must be positive")
        return value

    @field_validator("hospital_redirect_path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        if not value.startswith("/"):
            return "/" + value
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/msusers"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(fs_root)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
