import asyncio
import json

import httpx
import pytest

from app.core.config import Settings
from app.db.models.common import utcnow
from app.events.dispatcher import NotificationDispatcher
from app.events.outbox import OutboxEvent
from services.lifecycle.status import RequestStatus


@pytest.fixture
def peer_settings():
    return Settings(
        database_url="sqlite:///:memory:",
        dispatcher_enabled=False,
        machine_queue_url="http://machine-queue",
        material_inventory_url="http://inventory/",
        feedback_service_url="http://feedback",
        dispatcher_max_attempts=3,
    )


def _dispatch(settings, session_factory, handler):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            dispatcher = NotificationDispatcher(settings, session_factory, client=client)
            return await dispatcher.dispatch_pending()

    return asyncio.run(run())


def test_resolve_target(peer_settings, session_factory):
    dispatcher = NotificationDispatcher(peer_settings, session_factory)
    assert dispatcher.resolve_target("batch.created.queue") == "http://machine-queue/queue/add"
    assert dispatcher.resolve_target("batch.created.materials") == "http://inventory/inventory/reserve"
    assert dispatcher.resolve_target("quality.issue_detected") == "http://feedback/notifications"
    assert dispatcher.resolve_target("unknown.topic") is None


def test_delivers_batch_creation(peer_settings, session, session_factory, planned_batch):
    _, batch = planned_batch
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), request.headers["X-Event-Topic"], json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    report = _dispatch(peer_settings, session_factory, handler)
    assert report.delivered == 2
    assert report.total == 2

    urls = {url: body for url, _, body in seen}
    assert urls["http://machine-queue/queue/add"]["batchId"] == batch.id
    assert len(urls["http://machine-queue/queue/add"]["steps"]) == 2
    assert urls["http://inventory/inventory/reserve"]["materials"] == [
        {"materialId": "MAT-1", "quantityRequired": 100.0, "unitOfMeasure": "kg"}
    ]

    session.expire_all()
    assert all(e.delivered for e in session.query(OutboxEvent).all())


def test_failure_is_rescheduled_not_surfaced(peer_settings, session, session_factory, planned_batch):
    request, _ = planned_batch

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    report = _dispatch(peer_settings, session_factory, handler)
    assert report.failed == 2
    assert report.delivered == 0

    session.expire_all()
    for evt in session.query(OutboxEvent).all():
        assert evt.attempt_count == 1
        assert evt.last_error.startswith("HTTP 503")
        assert evt.available_at > utcnow()
        assert not evt.delivered

    # nothing is due yet
    assert _dispatch(peer_settings, session_factory, handler).total == 0
    assert session.get(type(request), request.id).status == RequestStatus.PLANNED


def test_connection_errors_count_as_failures(peer_settings, session_factory, planned_batch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    report = _dispatch(peer_settings, session_factory, handler)
    assert report.failed == 2


def test_dead_after_max_attempts(peer_settings, session, session_factory, planned_batch):
    settings = peer_settings.model_copy(update={"dispatcher_max_attempts": 1})

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    report = _dispatch(settings, session_factory, handler)
    assert report.dead == 2

    session.expire_all()
    assert all(e.dead for e in session.query(OutboxEvent).all())
    assert _dispatch(settings, session_factory, handler).total == 0


def test_untargeted_topics_are_closed(settings, session, session_factory, planned_batch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no peer is configured")

    report = _dispatch(settings, session_factory, handler)
    assert report.untargeted == 2

    session.expire_all()
    for evt in session.query(OutboxEvent).all():
        assert evt.delivered
        assert evt.last_error == "no target configured"
