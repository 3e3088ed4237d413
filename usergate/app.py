from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from usergate.api.error_handling import register_exception_handlers, unhandled_error_response
from usergate.api.routes import auth_router, users_router
from usergate.config import Settings, get_settings
from usergate.logging import get_logger, set_correlation_id
from usergate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was handed to ``create_app``."""
    owned = False
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = Runtime(app.state.settings)
        owned = True
    yield
    if owned:
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
        app.state.runtime = None


def create_app(
    runtime: Optional[Runtime] = None, *, settings: Optional[Settings] = None
) -> FastAPI:
    settings = runtime.settings if runtime is not None else (settings or get_settings())
    app = FastAPI(title="usergate", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs and the response with the client's X-Request-ID or a new one."""
        client_request_id = request.headers.get("X-Request-ID")
        if client_request_id and not _REQUEST_ID_PATTERN.match(client_request_id):
            client_request_id = None
        correlation_id = set_correlation_id(client_request_id)
        try:
            response = await call_next(request)
        except Exception as exc:
            # The catch-all handler runs outside every middleware, so answer here
            response = unhandled_error_response(request, exc)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
        return response

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(users_router)

    @app.get("/healthz")
    async def health(request: Request):
        checks: Dict[str, Any] = await request.app.state.runtime.check_health()
        healthy = all(state == "healthy" for state in checks.values())
        if not healthy:
            logger.warning("health_check_degraded", checks=checks)
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app


app = create_app()
