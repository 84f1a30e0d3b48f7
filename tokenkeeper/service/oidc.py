from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from tokenkeeper.config import Settings
from tokenkeeper.logging import get_logger
from tokenkeeper.service.errors import IdentityProviderError, InvalidIdToken
from tokenkeeper.storage.models import TokenBundle, UserInfo

logger = get_logger(__name__)


class ProviderMetadata(BaseModel):
    """Subset of the OpenID Connect discovery document used by the client."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    end_session_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None


def decode_id_token_claims(id_token: Optional[str]) -> Dict[str, Any]:
    """Decode the JSON payload (second segment) of a JWT without verifying it.

    The signature is not checked; only the subject and profile claims are
    read from the payload.
    """
    if not id_token:
        raise InvalidIdToken("no ID token in token response")
    parts = id_token.split(".")
    if len(parts) < 2 or not parts[1]:
        raise InvalidIdToken("ID token is not a JWT")
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeError) as exc:
        raise InvalidIdToken("ID token payload is not valid JSON") from exc
    if not isinstance(claims, dict):
        raise InvalidIdToken("ID token payload is not an object")
    return claims


def subject_from_id_token(id_token: Optional[str]) -> str:
    claims = decode_id_token_claims(id_token)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise InvalidIdToken("No subject identifier (sub) found in ID token")
    return sub


class IdentityProviderClient:
    """HTTP client for the external OIDC provider.

    Discovery is fetched lazily, retried a bounded number of times, and
    cached after the first success. Token endpoint grants are form-encoded
    with the client credentials in the body.
    """

    def __init__(
        self,
        issuer_base_url: str,
        client_id: str,
        client_secret: Optional[str],
        *,
        timeout: float = 10.0,
        discovery_retries: int = 3,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.issuer_base_url = issuer_base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.discovery_retries = discovery_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._metadata: Optional[ProviderMetadata] = None
        self._discovery_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "IdentityProviderClient":
        return cls(
            settings.issuer_base_url,
            settings.client_id,
            settings.client_secret,
            timeout=settings.http_timeout_seconds,
            discovery_retries=settings.discovery_retries,
            transport=transport,
        )

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=False
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # -- discovery ------------------------------------------------------------

    @property
    def metadata(self) -> Optional[ProviderMetadata]:
        return self._metadata

    async def discover(self) -> ProviderMetadata:
        if self._metadata is not None:
            return self._metadata
        async with self._discovery_lock:
            if self._metadata is not None:
                return self._metadata
            url = f"{self.issuer_base_url}/.well-known/openid-configuration"
            last_error: Optional[Exception] = None
            for attempt in range(self.discovery_retries + 1):
                if attempt:
                    await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
                try:
                    response = await self.http.get(url, headers={"Accept": "application/json"})
                    response.raise_for_status()
                    self._metadata = ProviderMetadata.model_validate(response.json())
                    logger.info("oidc_issuer_discovered", issuer=self._metadata.issuer)
                    return self._metadata
                except (httpx.HTTPError, ValueError, PydanticValidationError) as exc:
                    last_error = exc
                    logger.warning(
                        "oidc_discovery_failed", url=url, attempt=attempt + 1, error=str(exc)
                    )
            raise IdentityProviderError(
                "identity provider discovery failed", detail={"url": url}
            ) from last_error

    # -- token endpoint -------------------------------------------------------

    def _client_credentials(self) -> Dict[str, str]:
        creds = {"client_id": self.client_id}
        if self.client_secret:
            creds["client_secret"] = self.client_secret
        return creds

    async def _post_form(self, url: str, data: Dict[str, str], *, action: str) -> httpx.Response:
        try:
            response = await self.http.post(
                url,
                data={**data, **self._client_credentials()},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("oidc_request_failed", action=action, error=str(exc))
            raise IdentityProviderError(f"{action} request failed") from exc
        if response.status_code >= 400:
            detail: Dict[str, Any] = {"status_code": response.status_code}
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                detail["error"] = body.get("error")
                detail["error_description"] = body.get("error_description")
            logger.error("oidc_request_rejected", action=action, **detail)
            raise IdentityProviderError(f"{action} rejected by identity provider", detail=detail)
        return response

    async def _token_request(self, data: Dict[str, str], *, action: str) -> TokenBundle:
        metadata = await self.discover()
        response = await self._post_form(metadata.token_endpoint, data, action=action)
        try:
            return TokenBundle.from_token_response(response.json())
        except (ValueError, PydanticValidationError) as exc:
            logger.error("oidc_token_parse_error", action=action, error=str(exc))
            raise IdentityProviderError(f"{action} returned an invalid token response") from exc

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str) -> TokenBundle:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            action="token_exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenBundle:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="token_refresh",
        )

    # -- userinfo / introspection / revocation --------------------------------

    async def userinfo(self, access_token: str, expected_sub: Optional[str] = None) -> UserInfo:
        metadata = await self.discover()
        try:
            response = await self.http.get(
                metadata.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
            response.raise_for_status()
            info = UserInfo.model_validate(response.json())
        except httpx.HTTPError as exc:
            logger.error("oidc_userinfo_failed", error=str(exc))
            raise IdentityProviderError("userinfo request failed") from exc
        except (ValueError, PydanticValidationError) as exc:
            logger.error("oidc_userinfo_parse_error", error=str(exc))
            raise IdentityProviderError("userinfo response is invalid") from exc
        if expected_sub is not None and info.sub != expected_sub:
            raise InvalidIdToken("userinfo subject does not match ID token subject")
        return info

    async def introspect(self, token: str, token_type_hint: Optional[str] = None) -> Dict[str, Any]:
        metadata = await self.discover()
        url = metadata.introspection_endpoint or f"{metadata.issuer.rstrip('/')}/introspect"
        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        response = await self._post_form(url, data, action="token_introspection")
        try:
            return response.json()
        except ValueError as exc:
            raise IdentityProviderError("introspection response is not JSON") from exc

    async def revoke(self, token: str, token_type_hint: Optional[str] = None) -> None:
        metadata = await self.discover()
        url = metadata.revocation_endpoint or f"{metadata.issuer.rstrip('/')}/revoke"
        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        await self._post_form(url, data, action="token_revocation")

    async def end_session_url(
        self, id_token: Optional[str] = None, post_logout_redirect_uri: Optional[str] = None
    ) -> str:
        metadata = await self.discover()
        endpoint = metadata.end_session_endpoint or f"{metadata.issuer.rstrip('/')}/logout"
        params: Dict[str, str] = {}
        if id_token:
            params["id_token_hint"] = id_token
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
        if not params:
            return endpoint
        return f"{endpoint}?{urlencode(params)}"


__all__ = [
    "IdentityProviderClient",
    "ProviderMetadata",
    "decode_id_token_claims",
    "subject_from_id_token",
]
