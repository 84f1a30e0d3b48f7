from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from tokenkeeper.api.error_handling import register_exception_handlers
from tokenkeeper.api.routes import router
from tokenkeeper.config import Settings, get_settings
from tokenkeeper.logging import get_logger, set_correlation_id
from tokenkeeper.service.errors import RefreshFailure
from tokenkeeper.service.lifecycle import RequestAuthContext
from tokenkeeper.service.runtime import Runtime
from tokenkeeper.storage.models import SessionData

logger = get_logger(__name__)

__version__ = "0.1.0"


def _is_blank(session: SessionData) -> bool:
    return (
        session.tokens is None
        and session.user_info is None
        and session.pkce is None
        and session.return_to is None
    )


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the client application around an explicitly constructed Runtime."""
    settings = settings or (runtime.settings if runtime is not None else get_settings())
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        logger.info("app_started", version=__version__)
        yield
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="tokenkeeper", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    cookie_name = settings.session_cookie_name

    @app.middleware("http")
    async def attach_session(request: Request, call_next):
        """Load the caller's session and keep its tokens fresh for the request.

        A refresh failure here leaves the request unauthenticated rather than
        failing it; protected routes then answer 401.
        """
        cookie_value = request.cookies.get(cookie_name)
        session, created = await runtime.sessions.load_or_create(cookie_value)
        pristine = session.model_dump_json()
        manager = runtime.lifecycle_for(session)
        await manager.load()
        try:
            await manager.ensure_valid_token()
        except RefreshFailure as exc:
            logger.warning("session_deauthenticated", error_code=exc.error_code)
        request.state.auth = RequestAuthContext(manager)

        try:
            response = await call_next(request)
        finally:
            await manager.aclose()

        current = manager.session
        if _is_blank(current):
            if cookie_value and (created or manager.session_destroyed):
                response.delete_cookie(cookie_name, path="/")
        elif current.model_dump_json() != pristine or current.id != cookie_value:
            await runtime.sessions.save(current)
            response.set_cookie(
                cookie_name,
                current.id,
                max_age=settings.session_ttl_seconds,
                httponly=True,
                secure=settings.session_cookie_secure,
                samesite="lax",
                path="/",
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs for this request and echo the id in ``X-Request-ID``."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


__all__ = ["create_app"]
