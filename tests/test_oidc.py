"""Tests for the identity provider client."""

import pytest

from tokenkeeper.service.errors import IdentityProviderError, InvalidIdToken
from tokenkeeper.service.oidc import (
    IdentityProviderClient,
    decode_id_token_claims,
    subject_from_id_token,
)


@pytest.fixture
def provider(idp):
    return IdentityProviderClient(
        "http://idp.test/", "client-app", "client-secret", retry_delay=0, transport=idp.transport()
    )


class TestIdTokenDecoding:
    def test_decodes_claims(self, id_token_factory):
        token = id_token_factory({"sub": "abc", "email": "a@b.c"})
        assert decode_id_token_claims(token)["email"] == "a@b.c"
        assert subject_from_id_token(token) == "abc"

    def test_missing_token(self):
        with pytest.raises(InvalidIdToken):
            subject_from_id_token(None)

    def test_not_a_jwt(self):
        with pytest.raises(InvalidIdToken):
            decode_id_token_claims("opaque")

    def test_payload_not_json(self):
        with pytest.raises(InvalidIdToken):
            decode_id_token_claims("aGVhZGVy.bm90LWpzb24.sig")

    def test_missing_subject(self, id_token_factory):
        with pytest.raises(InvalidIdToken):
            subject_from_id_token(id_token_factory({"email": "a@b.c"}))


class TestDiscovery:
    async def test_cached_after_first_success(self, provider, idp):
        first = await provider.discover()
        second = await provider.discover()
        assert first is second
        assert first.token_endpoint == "http://idp.test/oauth2/token"
        assert idp.count("/.well-known/openid-configuration") == 1
        await provider.aclose()

    async def test_retries_transient_failures(self, provider, idp):
        idp.discovery_failures = 2
        metadata = await provider.discover()
        assert metadata.issuer == "http://idp.test"
        assert idp.count("/.well-known/openid-configuration") == 3
        await provider.aclose()

    async def test_gives_up_after_retries(self, provider, idp):
        idp.discovery_failures = 10
        with pytest.raises(IdentityProviderError):
            await provider.discover()
        assert idp.count("/.well-known/openid-configuration") == 4
        assert provider.metadata is None
        await provider.aclose()


class TestTokenEndpoint:
    async def test_refresh_grant(self, provider, idp):
        bundle = await provider.refresh("refresh-old")
        assert bundle.access_token == "access-1"
        form = idp.refresh_grants[0]
        assert form["refresh_token"] == "refresh-old"
        assert form["client_id"] == "client-app"
        await provider.aclose()

    async def test_rejected_refresh_carries_oauth_error(self, provider, idp):
        idp.refresh_error = 400
        with pytest.raises(IdentityProviderError) as excinfo:
            await provider.refresh("refresh-old")
        assert excinfo.value.detail["error"] == "invalid_grant"
        assert excinfo.value.detail["status_code"] == 400
        await provider.aclose()


class TestRevocationAndLogout:
    async def test_revoke_and_introspect(self, provider, idp):
        assert (await provider.introspect("rt-1"))["active"] is True
        await provider.revoke("rt-1", "refresh_token")
        assert idp.revoked == ["rt-1"]
        assert (await provider.introspect("rt-1"))["active"] is False
        await provider.aclose()

    async def test_end_session_url(self, provider):
        url = await provider.end_session_url("id-tok", "http://testserver")
        assert url.startswith("http://idp.test/oauth2/sessions/logout?")
        assert "id_token_hint=id-tok" in url
        assert "post_logout_redirect_uri=http%3A%2F%2Ftestserver" in url
        await provider.aclose()
