"""
Application entry point: wires the provider, routers and the sweeper.
"""

import gc
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncEngine

from idserver.client.router import router as client_router
from idserver.config import Settings
from idserver.config import settings as default_settings
from idserver.database import Base, create_engine, session_factory
from idserver.exceptions import AuthorizationRedirect, InvalidRequest, OAuthError
from idserver.grant.service import GrantFlowController
from idserver.idp.router import router as idp_router
from idserver.idp.router import well_known_router
from idserver.provider import Provider

# Importing the models registers their tables on Base.metadata.
import idserver.client.schemas  # noqa: F401
import idserver.token.schemas  # noqa: F401
import idserver.user.schemas  # noqa: F401

HTTPS_EXEMPT_PATHS = {"/health"}


def is_secure(request: Request) -> bool:
    if request.url.scheme == "https":
        return True
    return request.headers.get("x-forwarded-proto", "").split(",")[0].strip() == "https"


def create_app(
    settings: Optional[Settings] = None,
    redis_client=None,
    engine: Optional[AsyncEngine] = None,
    clock: Callable[[], float] = time.time,
    start_sweeper: bool = True,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gc.set_threshold(5000, 50, 50)
        logger.info("Inside the lifespan...")
        owned_engine = engine is None
        owned_redis = redis_client is None
        db_engine = engine or create_engine(settings.sqlalchemy)
        cache = redis_client or redis.Redis.from_url(settings.redis_url)
        async with db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Initialized the database...")

        provider = Provider.build(
            settings, cache, session_factory(db_engine), clock=clock, engine=db_engine
        )
        await provider.keyring.load()
        app.state.provider = provider
        if start_sweeper:
            provider.sweeper.start()
        logger.success(f"Identity provider ready: issuer={settings.issuer}")
        yield
        if start_sweeper:
            await provider.sweeper.stop()
        if owned_redis:
            await cache.aclose()
        if owned_engine:
            await db_engine.dispose()

    app = FastAPI(title="idserver", lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def require_https(request: Request, call_next):
        if (
            settings.require_https
            and request.url.path not in HTTPS_EXEMPT_PATHS
            and not is_secure(request)
        ):
            logger.warning(f"Rejected plain HTTP request to {request.url.path}")
            error = InvalidRequest("HTTPS is required")
            return JSONResponse(status_code=error.status_code, content=error.to_dict())
        return await call_next(request)

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        headers = {"Cache-Control": "no-store", "Pragma": "no-cache"}
        if exc.status_code == 401:
            scheme = "Bearer" if request.url.path.endswith("/userinfo") else "Basic"
            headers["WWW-Authenticate"] = f'{scheme} error="{exc.error}"'
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(AuthorizationRedirect)
    async def authorization_redirect_handler(request: Request, exc: AuthorizationRedirect):
        return RedirectResponse(url=GrantFlowController.error_redirect(exc), status_code=302)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(idp_router, prefix="/connect", tags=["OpenID Connect"])
    app.include_router(well_known_router, prefix="/.well-known", tags=["Discovery"])
    app.include_router(client_router, prefix="/clients", tags=["Clients"])
    return app
