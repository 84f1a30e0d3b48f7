import asyncio
import base64
import inspect
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx  # noqa: E402
import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokenkeeper.config import Settings  # noqa: E402
from tokenkeeper.service.runtime import Runtime  # noqa: E402

ISSUER = "http://idp.test"
API_URL = "http://api.test"
SUBJECT = "user-123"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def make_id_token(claims: Dict[str, Any]) -> str:
    header = _b64url(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
    payload = _b64url(json.dumps(claims).encode())
    return f"{header}.{payload}.signature"


class FakeIdentityProvider:
    """OIDC provider served through httpx.MockTransport."""

    def __init__(self, sub: str = SUBJECT):
        self.sub = sub
        self.userinfo_sub: Optional[str] = None
        self.expires_in = 3600
        self.rotate_refresh_tokens = True
        self.refresh_error: Optional[int] = None
        self.discovery_failures = 0
        self.refresh_delay = 0.0
        self.requests: List[httpx.Request] = []
        self.token_forms: List[Dict[str, str]] = []
        self.revoked: List[str] = []
        self._issued = 0

    def metadata(self) -> Dict[str, Any]:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/oauth2/auth",
            "token_endpoint": f"{ISSUER}/oauth2/token",
            "userinfo_endpoint": f"{ISSUER}/userinfo",
            "end_session_endpoint": f"{ISSUER}/oauth2/sessions/logout",
            "revocation_endpoint": f"{ISSUER}/oauth2/revoke",
            "introspection_endpoint": f"{ISSUER}/oauth2/introspect",
        }

    def issue_tokens(self, refresh_token: Optional[str] = None) -> Dict[str, Any]:
        self._issued += 1
        return {
            "access_token": f"access-{self._issued}",
            "refresh_token": refresh_token or f"refresh-{self._issued}",
            "id_token": make_id_token({"sub": self.sub, "iss": ISSUER}),
            "token_type": "bearer",
            "expires_in": self.expires_in,
            "scope": "openid offline_access profile email",
        }

    def count(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    @property
    def refresh_grants(self) -> List[Dict[str, str]]:
        return [form for form in self.token_forms if form.get("grant_type") == "refresh_token"]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            if self.discovery_failures > 0:
                self.discovery_failures -= 1
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json=self.metadata())
        if path == "/oauth2/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_forms.append(form)
            if form.get("grant_type") == "authorization_code":
                return httpx.Response(200, json=self.issue_tokens())
            if form.get("grant_type") == "refresh_token":
                if self.refresh_delay:
                    await asyncio.sleep(self.refresh_delay)
                if self.refresh_error:
                    return httpx.Response(
                        self.refresh_error,
                        json={"error": "invalid_grant", "error_description": "token revoked"},
                    )
                keep = None if self.rotate_refresh_tokens else form["refresh_token"]
                return httpx.Response(200, json=self.issue_tokens(keep))
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        if path == "/userinfo":
            return httpx.Response(
                200,
                json={"sub": self.userinfo_sub or self.sub, "email": "ada@example.com", "name": "Ada"},
            )
        if path == "/oauth2/revoke":
            form = dict(parse_qsl(request.content.decode()))
            self.revoked.append(form["token"])
            return httpx.Response(200)
        if path == "/oauth2/introspect":
            form = dict(parse_qsl(request.content.decode()))
            return httpx.Response(200, json={"active": form["token"] not in self.revoked})
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeBackend:
    """Blog/user API that records the bearer token of each call."""

    def __init__(self):
        self.authorizations: List[Optional[str]] = []
        self.blogs = {"1": {"id": "1", "title": "Hello"}, "2": {"id": "2", "title": "Again"}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.authorizations.append(request.headers.get("Authorization"))
        if not request.headers.get("Authorization"):
            return httpx.Response(401, json={"error": "Unauthorized"})
        parts = request.url.path.strip("/").split("/")
        if parts == ["blogs"] and request.method == "GET":
            return httpx.Response(200, json=list(self.blogs.values()))
        if len(parts) == 2 and parts[0] == "blogs":
            blog = self.blogs.get(parts[1])
            if blog is None:
                return httpx.Response(404, json={"error": "Blog not found"})
            return httpx.Response(200, json=blog)
        if len(parts) == 2 and parts[0] == "users":
            return httpx.Response(200, json={"id": parts[1], "email": "ada@example.com"})
        return httpx.Response(404, json={"error": "Not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeRedis:
    """Async stand-in for a redis.asyncio client."""

    def __init__(self, fail_ping: bool = False):
        self.fail_ping = fail_ping
        self.fail_commands = False
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.closed = False

    async def ping(self) -> bool:
        if self.fail_ping:
            raise RedisConnectionError("connection refused")
        return True

    def _check(self) -> None:
        if self.fail_commands:
            raise RedisConnectionError("connection reset")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._check()
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    async def aclose(self) -> None:
        self.closed = True


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "redis_url": None,
        "issuer_base_url": ISSUER,
        "client_id": "client-app",
        "client_secret": "client-secret",
        "base_url": "http://testserver",
        "api_url": API_URL,
        "test_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def id_token_factory():
    return make_id_token


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def runtime(settings, idp, backend) -> Runtime:
    return Runtime(settings, idp_transport=idp.transport(), api_transport=backend.transport())


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
