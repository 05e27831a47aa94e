"""
FastAPI application factory.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import get_settings
from .core.database import init_db, close_db
from .core.dependencies import close_orchestrator
from .core.errors import (
    InvariantViolation,
    MemoryStoreError,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
    VersionConflict,
)
from .api.router import router

logger = logging.getLogger(__name__)

# Most specific first; MemoryStoreError catches the rest
ERROR_STATUS = [
    (NotFound, 404),
    (Unauthorized, 401),
    (VersionConflict, 409),
    (UpstreamUnavailable, 503),
    (InvariantViolation, 500),
    (MemoryStoreError, 500),
]


def status_for(exc: Exception) -> int:
    if isinstance(exc, ValueError):
        return 400
    for kind, code in ERROR_STATUS:
        if isinstance(exc, kind):
            return code
    return 500


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Memostore",
        description="Per-user memory storage with semantic search",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if origins != ["*"] else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Errors ───────────────────────────────────────────────────
    async def engine_error(request: Request, exc: Exception):
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    app.add_exception_handler(MemoryStoreError, engine_error)
    app.add_exception_handler(ValueError, engine_error)

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting Memostore (env=%s)", settings.env)

        await init_db()

        from .core.flags import get_flags
        flags = get_flags()
        logger.info(
            "Flags: github=%s remote_embeddings=%s llm_categorizer=%s",
            flags.use_github, flags.use_remote_embeddings, flags.use_llm_categorizer,
        )

        logger.info("Memostore is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        from .services.llm import close_client
        await close_client()
        await close_orchestrator()
        await close_db()
        logger.info("Memostore shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
