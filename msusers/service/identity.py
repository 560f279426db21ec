from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from msusers.config import Settings
from msusers.logging import get_logger
from msusers.service.errors import ExternalAuthFailure, MissingIdentityId

logger = get_logger(__name__)


@dataclass
class ExternalIdentity:
    """Account descriptor returned by the identity provider."""

    external_id: str
    email: str
    display_name: Optional[str] = None
    external_tenant_id: Optional[str] = None


class IdentityBridge:
    """Turns Azure AD credentials into an :class:`ExternalIdentity`.

    Two entry points share one normalisation path: the authorization-code
    flow (code exchanged at the token endpoint, then Graph ``/me``) and the
    bearer flow (a provider access token the client already holds, checked
    by calling Graph ``/me`` with it). Every provider call is bounded by
    ``Settings.idp_timeout_seconds`` and never retried.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.idp_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    async def exchange_code(self, code: str) -> ExternalIdentity:
        settings = self.settings
        if not (
            settings.azure_client_id
            and settings.azure_client_secret
            and settings.azure_redirect_uri
        ):
            logger.error("azure_credentials_missing")
            raise ExternalAuthFailure()
        if not code:
            raise ExternalAuthFailure()

        token_data = {
            "client_id": settings.azure_client_id,
            "client_secret": settings.azure_client_secret,
            "code": code,
            "redirect_uri": settings.azure_redirect_uri,
            "grant_type": "authorization_code",
            "scope": settings.azure_scopes,
        }
        try:
            async with self._client() as client:
                token_response = await client.post(
                    settings.azure_token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = _json_object(token_response, "azure_token_parse_error")
                access_token = token_result.get("access_token")
                if not access_token:
                    logger.error("azure_no_access_token")
                    raise ExternalAuthFailure()
                userinfo = await self._fetch_me(client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "azure_code_exchange_rejected",
                status_code=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise ExternalAuthFailure() from exc
        except httpx.HTTPError as exc:
            logger.error("azure_code_exchange_error", error=str(exc))
            raise ExternalAuthFailure() from exc

        id_claims = _unverified_claims(token_result.get("id_token"))
        identity = self._parse_userinfo(userinfo)
        identity.external_tenant_id = id_claims.get("tid")
        logger.info("azure_code_exchange_success", external_id=identity.external_id)
        return identity

    async def from_access_token(
        self, access_token: str, id_token: Optional[str] = None
    ) -> ExternalIdentity:
        if not access_token:
            raise ExternalAuthFailure()
        try:
            async with self._client() as client:
                userinfo = await self._fetch_me(client, access_token)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "azure_token_rejected", status_code=exc.response.status_code
            )
            raise ExternalAuthFailure() from exc
        except httpx.HTTPError as exc:
            logger.error("azure_userinfo_error", error=str(exc))
            raise ExternalAuthFailure() from exc

        identity = self._parse_userinfo(userinfo)
        # The id token comes from the client, so only trust its tenant when it
        # names the same account Graph just confirmed.
        id_claims = _unverified_claims(id_token)
        if id_claims.get("oid") == identity.external_id:
            identity.external_tenant_id = id_claims.get("tid")
        elif id_token:
            logger.warning("azure_id_token_mismatch", external_id=identity.external_id)
        return identity

    async def _fetch_me(self, client: httpx.AsyncClient, access_token: str) -> dict:
        response = await client.get(
            self.settings.graph_me_url,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        response.raise_for_status()
        return _json_object(response, "azure_userinfo_parse_error")

    def _parse_userinfo(self, userinfo: dict) -> ExternalIdentity:
        external_id = userinfo.get("id")
        if not external_id:
            logger.error("azure_identity_missing_id")
            raise MissingIdentityId()
        email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        if not email:
            logger.error("azure_identity_missing_email", external_id=external_id)
            raise ExternalAuthFailure()
        return ExternalIdentity(
            external_id=str(external_id),
            email=str(email),
            display_name=userinfo.get("displayName") or None,
        )


def _json_object(response: httpx.Response, event: str) -> dict:
    try:
        body = response.json()
    except ValueError as exc:
        logger.error(event, error=str(exc))
        raise ExternalAuthFailure() from exc
    if not isinstance(body, dict):
        logger.error(event, type=type(body).__name__)
        raise ExternalAuthFailure()
    return body


def _unverified_claims(id_token: Optional[str]) -> dict[str, Any]:
    """Read an id token's claims without checking its signature."""
    if not id_token:
        return {}
    try:
        segment = id_token.split(".")[1]
        padding = "=" * ((4 - len(segment) % 4) % 4)
        claims = json.loads(base64.urlsafe_b64decode(segment + padding))
    except (IndexError, ValueError, TypeError):
        logger.warning("azure_id_token_unreadable")
        return {}
    return claims if isinstance(claims, dict) else {}
