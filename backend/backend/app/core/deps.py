from __future__ import annotations

from datetime import datetime, timezone

from fastapi import BackgroundTasks, Header, Request

from app.events.dispatcher import NotificationDispatcher
from services.lifecycle.orchestrator import LifecycleOrchestrator


def get_orchestrator(request: Request) -> LifecycleOrchestrator:
    return request.app.state.orchestrator


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_actor(x_actor: str | None = Header(default=None)) -> str:
    """Who performed the call, as recorded in the audit log. Authentication happens upstream."""
    return (x_actor or "").strip() or "anonymous"


def kick_dispatcher(request: Request, background_tasks: BackgroundTasks) -> None:
    """Deliver fresh outbox rows right after the response instead of waiting for the next poll."""
    dispatcher: NotificationDispatcher | None = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None and request.app.state.settings.dispatcher_enabled:
        background_tasks.add_task(dispatcher.dispatch_pending)


def naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
