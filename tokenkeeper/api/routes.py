from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from tokenkeeper.api.error_handling import error_response
from tokenkeeper.api.schemas import Envelope, HealthResponse, ProfileResponse, TokenMetadata
from tokenkeeper.service.api_clients import ApiResponse
from tokenkeeper.service.errors import (
    AuthenticationError,
    NotAuthenticated,
    NotFoundError,
    ServiceError,
)
from tokenkeeper.service.lifecycle import RequestAuthContext
from tokenkeeper.service.runtime import Runtime

router = APIRouter()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_auth(request: Request) -> RequestAuthContext:
    return request.state.auth


def require_auth(request: Request, auth: RequestAuthContext = Depends(get_auth)) -> RequestAuthContext:
    if not auth.is_authenticated:
        # Remember where to land after login
        auth.services.session.return_to = _safe_return_to(request.url.path)
        raise NotAuthenticated("Sign in to access this resource")
    return auth


def _safe_return_to(value: Optional[str]) -> Optional[str]:
    """Only same-site absolute paths are accepted as post-login targets."""
    if not value or not value.startswith("/") or value.startswith("//"):
        return None
    return value


def _unwrap(result: ApiResponse) -> Envelope:
    if result.ok:
        return Envelope(status="ok", data=result.data)
    if result.status_code == 404:
        raise NotFoundError(result.error or "not found")
    if result.status_code in (401, 403):
        raise AuthenticationError(result.error or "backend rejected credentials", status_code=result.status_code)
    raise ServiceError(
        result.error or "backend request failed",
        status_code=502,
        error_code="bad_gateway",
        detail={"upstream_status": result.status_code},
    )


@router.get("/login")
async def login(
    return_to: Optional[str] = Query(None),
    auth: RequestAuthContext = Depends(get_auth),
):
    target = _safe_return_to(return_to)
    if auth.is_authenticated:
        return RedirectResponse(target or "/", status_code=302)
    url = await auth.services.authorization_url(return_to=target)
    return RedirectResponse(url, status_code=302)


@router.get("/callback")
async def callback(request: Request, auth: RequestAuthContext = Depends(get_auth)):
    manager = auth.services
    result = await manager.complete_login(str(request.url))
    if not result.ok:
        exc = result.error
        status_code = exc.status_code if exc is not None and exc.status_code >= 500 else 401
        return error_response(
            status_code,
            exc.message if exc is not None else "login failed",
            {"outcome": result.outcome.value},
            code=exc.error_code if exc is not None else "unauthorized",
        )
    target = manager.session.return_to or "/"
    manager.session.return_to = None
    return RedirectResponse(target, status_code=302)


@router.api_route("/logout", methods=["GET", "POST"])
async def logout(auth: RequestAuthContext = Depends(get_auth)):
    end_session_url = await auth.services.logout()
    return RedirectResponse(end_session_url or "/", status_code=302)


@router.get("/me", response_model=Envelope)
async def me(auth: RequestAuthContext = Depends(require_auth)):
    tokens = auth.tokens
    profile = ProfileResponse(
        user=auth.user.model_dump() if auth.user else {},
        token=TokenMetadata(
            token_type=tokens.token_type,
            scope=tokens.scope,
            expires_in=tokens.expires_in,
            expires_at=tokens.expires_at,
            has_refresh_token=bool(tokens.refresh_token),
        ),
    )
    return Envelope(status="ok", data=profile.model_dump())


@router.get("/blogs", response_model=Envelope)
async def list_blogs(auth: RequestAuthContext = Depends(require_auth)):
    return _unwrap(await auth.services.get_blog_service().list_blogs())


@router.get("/blogs/{blog_id}", response_model=Envelope)
async def get_blog(blog_id: str, auth: RequestAuthContext = Depends(require_auth)):
    return _unwrap(await auth.services.get_blog_service().get_blog(blog_id))


@router.get("/users/{user_id}", response_model=Envelope)
async def get_user(user_id: str, auth: RequestAuthContext = Depends(require_auth)):
    return _unwrap(await auth.services.get_user_service().get_user(user_id))


@router.get("/healthz", response_model=Envelope)
async def healthz(runtime: Runtime = Depends(get_runtime)):
    cache = runtime.cache
    if cache.fallback_active:
        cache_status = "fallback"
    elif await cache.is_available():
        cache_status = "ok"
    else:
        cache_status = "degraded"
    health = HealthResponse(
        cache=cache_status,
        cache_fallback=cache.fallback_active,
        identity_provider="ok" if runtime.provider.metadata is not None else "not_discovered",
    )
    return Envelope(status="ok", data=health.model_dump())
