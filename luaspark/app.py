from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from luaspark.api.error_handling import register_exception_handlers
from luaspark.api.routes import router
from luaspark.api.schemas import HealthResponse
from luaspark.config import Settings, get_settings
from luaspark.logging import get_logger, set_correlation_id
from luaspark.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    """Build the FastAPI app.

    ``runtime`` is built from ``settings`` inside the lifespan unless one is
    passed in, so each app instance owns its own store, sessions and backend.
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = Runtime(settings)
        active: Runtime = app.state.runtime
        active.start_periodic_flush()
        logger.info(
            "server_started",
            host=settings.host,
            port=settings.port,
            flush_interval_seconds=settings.flush_interval_seconds,
        )

        yield

        try:
            await active.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="LuaSpark", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Admin-Key",
            "X-Webhook-Secret",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
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
        if response.headers.get("content-type", "").startswith("application/json"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    static_dir = Path(settings.static_dir)

    @app.get("/", response_class=FileResponse, include_in_schema=False)
    async def serve_index() -> FileResponse:
        index = static_dir / "index.html"
        if not index.is_file():
            raise HTTPException(status_code=404, detail="index page not found")
        return FileResponse(index)

    @app.get("/healthz", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        active: Runtime = request.app.state.runtime
        return HealthResponse(
            status="healthy",
            identities=active.store.count(),
            sessions=active.sessions.count(),
            backend=active.backend.mode,
            version=__version__,
        )

    # Mounted last: API routes take precedence over files of the same name
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir), name="public")
    else:
        logger.info("static_assets_missing", path=str(static_dir))

    return app
