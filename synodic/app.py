from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from synodic.api.error_handling import error_response, register_exception_handlers
from synodic.api.routes import router
from synodic.config import Settings, get_settings
from synodic.logging import get_logger, set_correlation_id
from synodic.service.errors import RateLimitedError
from synodic.service.rate_limit import RATE_LIMIT_MESSAGE

logger = get_logger(__name__)

__version__ = "0.1.0"

RATE_LIMITED_PREFIX = "/api/"


def client_address(request: Request, *, trust_proxy_headers: bool) -> str:
    """Address used as the rate limit key.

    ``X-Forwarded-For`` is client controlled, so it is only honoured when the
    server sits behind a proxy that overwrites it.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from synodic.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "server_started",
        provider=runtime.settings.ai_provider.value,
        model=runtime.settings.provider_model,
        api_key_configured=bool(runtime.settings.ai_api_key),
        port=runtime.settings.port,
    )
    if not runtime.settings.ai_api_key:
        logger.warning("api_key_missing", provider=runtime.settings.ai_provider.value)

    yield

    await runtime.close()
    logger.info("runtime_cleanup_complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Synodic AI", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def enforce_rate_limit(request: Request, call_next):
        if not request.url.path.startswith(RATE_LIMITED_PREFIX) or request.method == "OPTIONS":
            return await call_next(request)
        from synodic.service.runtime import get_runtime

        runtime = get_runtime()
        key = client_address(request, trust_proxy_headers=runtime.settings.trust_proxy_headers)
        decision = await runtime.rate_limiter.hit(key)
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(decision.reset_seconds),
        }
        if not decision.allowed:
            logger.warning("rate_limit_exceeded", path=request.url.path, client=key)
            headers["Retry-After"] = str(decision.reset_seconds)
            exc = RateLimitedError(RATE_LIMIT_MESSAGE)
            return error_response(exc.status_code, exc.message, exc.error_code, headers=headers)
        response = await call_next(request)
        for name, value in headers.items():
            response.headers.setdefault(name, value)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith(RATE_LIMITED_PREFIX):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    # Middleware added later wraps earlier ones; CORS stays outermost
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(router)

    if settings.static_dir:
        static_dir = Path(settings.static_dir)
        if static_dir.is_dir():
            app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
        else:
            logger.warning("static_dir_missing", path=str(static_dir))

    return app


app = create_app()
