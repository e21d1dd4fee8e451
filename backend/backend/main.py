from __future__ import annotations

import asyncio
import contextlib

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import Settings, load_settings
from app.core.logger import configure_logging, get_logger
from app.core.middleware import RequestContextMiddleware
from app.db.base import Base
from app.db.session import build_engine, build_session_factory

# Register models
from app.db import models  # noqa: F401

from app.events.dispatcher import NotificationDispatcher
from services.admin.events_api import router as events_admin_router
from services.feedback.api import router as feedback_router
from services.lifecycle.errors import LifecycleError
from services.lifecycle.orchestrator import LifecycleOrchestrator
from services.production.api import router as production_router

log = get_logger("app")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    app = FastAPI(title="Production Lifecycle")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.orchestrator = LifecycleOrchestrator(settings)
    app.state.dispatcher = NotificationDispatcher(settings, session_factory)
    app.state.dispatcher_task = None

    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(LifecycleError)
    async def _lifecycle_error(request: Request, exc: LifecycleError):
        log.info("%s: %s", exc.code, exc.message, extra={"request_id": request.headers.get("X-Request-Id")})
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})

    @app.on_event("startup")
    async def _startup():
        # Deliver the outbox in-process; peers learn of changes without blocking the caller
        if settings.dispatcher_enabled:
            app.state.dispatcher_task = asyncio.create_task(app.state.dispatcher.run_forever())

    @app.on_event("shutdown")
    async def _shutdown():
        task = app.state.dispatcher_task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        engine.dispose()

    app.include_router(production_router)
    app.include_router(feedback_router)
    app.include_router(events_admin_router)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
