# authgate/main.py
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.api.auth import router as auth_router
from authgate.api.mcp import router as mcp_router
from authgate.api.oauth import router as oauth_router
from authgate.core.config import Settings, settings as default_settings
from authgate.core.crypto import CredentialIssuer
from authgate.core.logging_config import configure_logging
from authgate.core.rate_limit import RateLimiter
from authgate.services.auth import AuthResolver
from authgate.services.broker import OAuthBroker
from authgate.services.gateway import ProtocolGateway
from authgate.store.codes import AuthorizationCodeStore
from authgate.store.sessions import SessionStore
from authgate.store.sweeper import SweepJob, Sweeper
from authgate.upstream.client import UpstreamOAuthClient

logger = logging.getLogger(__name__)


def create_app(
    cfg: Settings | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], float] | None = None,
    sweep_sleep: Callable[[float], Awaitable[None]] | None = None,
) -> FastAPI:
    cfg = cfg or default_settings
    limiter = RateLimiter.from_settings(cfg, clock=clock or time.monotonic)
    clock = clock or time.time

    sessions = SessionStore(cfg.session_ttl_seconds, clock=clock)
    codes = AuthorizationCodeStore(cfg.auth_code_ttl_seconds, clock=clock)
    issuer = CredentialIssuer(cfg, clock=clock)
    upstream = UpstreamOAuthClient(cfg, transport=upstream_transport, clock=clock)
    broker = OAuthBroker(sessions, codes, issuer, upstream, cfg)
    resolver = AuthResolver(sessions, issuer, upstream, cfg, clock=clock)
    sweeper = Sweeper(
        [
            SweepJob("sessions", cfg.session_sweep_interval_seconds, sessions.sweep_expired),
            SweepJob("auth_codes", cfg.code_sweep_interval_seconds, codes.sweep_expired),
            SweepJob("rate_limits", cfg.code_sweep_interval_seconds,
                     lambda: limiter.cleanup(cfg.rate_limit_window_seconds)),
        ],
        sleep=sweep_sleep or asyncio.sleep,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # === STARTUP ===
        configure_logging(cfg.log_level)
        sweeper.start()
        logger.info("%s v%s started (read-only mode: %s)",
                    cfg.server_name, cfg.server_version, cfg.read_only_mode)
        yield
        # === SHUTDOWN ===
        await sweeper.stop()
        await upstream.aclose()

    app = FastAPI(title="Auth Gateway", version=cfg.server_version, lifespan=lifespan)

    app.state.settings = cfg
    app.state.sessions = sessions
    app.state.codes = codes
    app.state.issuer = issuer
    app.state.upstream = upstream
    app.state.broker = broker
    app.state.resolver = resolver
    app.state.gateway = ProtocolGateway(cfg=cfg)
    app.state.clients = {}
    app.state.sweeper = sweeper
    app.state.rate_limiter = limiter

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        if cfg.rate_limit_max_requests <= 0:
            return await call_next(request)
        client_ip = request.client.host if request.client else "unknown"
        info = limiter.check(client_ip)
        if not info.allowed:
            logger.warning("Rate limit exceeded for %s on %s", client_ip, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"error": "Too Many Requests", "message": "Rate limit exceeded. Please try again later."},
                headers=info.headers(),
            )
        response = await call_next(request)
        response.headers.update(info.headers())
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cfg.cors_origins.split(",") if o.strip()],
        allow_credentials=cfg.cors_origins != "*",
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Mcp-Session-Id"],
        expose_headers=["WWW-Authenticate", "Retry-After"],
    )

    # outermost, so rate-limited responses are logged too
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %dms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    app.include_router(oauth_router, tags=["oauth"])
    app.include_router(auth_router, tags=["auth"])
    app.include_router(mcp_router, tags=["mcp"])

    @app.get("/")
    def root():
        return {
            "name": cfg.server_name,
            "version": cfg.server_version,
            "protocolVersion": cfg.protocol_version,
            "endpoints": {
                "rpc": "/mcp",
                "authorize": "/authorize",
                "token": "/token",
                "login": "/auth/login",
                "health": "/health",
            },
        }

    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": int(clock())}

    @app.get("/stats")
    def stats(request: Request):
        return request.app.state.broker.stats()

    return app


app = create_app()


def run() -> None:
    uvicorn.run("authgate.main:app", host=default_settings.host, port=default_settings.port)
