from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import Settings
from app.core.logger import get_logger
from app.db.models.common import utcnow
from app.events.outbox import OutboxEvent
from services.lifecycle.errors import NotificationDeliveryFailed
from services.lifecycle.events import TOPIC_ROUTES

log = get_logger("dispatcher")


@dataclass
class DispatchReport:
    delivered: int = 0
    failed: int = 0
    dead: int = 0
    untargeted: int = 0

    @property
    def total(self) -> int:
        return self.delivered + self.failed + self.dead + self.untargeted


def _schedule_next(attempt_count: int) -> datetime:
    # Exponential backoff capped at 10 minutes
    seconds = min(600, 2 ** min(attempt_count, 9))
    return utcnow() + timedelta(seconds=seconds)


class NotificationDispatcher:
    """Delivers outbox rows to peer services over HTTP.

    Delivery never touches lifecycle tables: a failed POST only updates the
    outbox row's attempt bookkeeping.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self._client = client
        self._lock = asyncio.Lock()

    def resolve_target(self, topic: str) -> str | None:
        route = TOPIC_ROUTES.get(topic)
        if route is None:
            return None
        service, path = route
        base_url = getattr(self.settings, f"{service}_url", "") or ""
        if not base_url:
            return None
        return base_url.rstrip("/") + path

    async def _deliver_one(self, client: httpx.AsyncClient, evt: OutboxEvent, target: str) -> None:
        headers = {"X-Event-Id": evt.id, "X-Event-Topic": evt.topic}
        try:
            resp = await client.post(
                target,
                json=evt.payload or {},
                headers=headers,
                timeout=self.settings.notification_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise NotificationDeliveryFailed(evt.topic, target, f"{type(e).__name__}: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise NotificationDeliveryFailed(evt.topic, target, f"HTTP {resp.status_code}: {resp.text[:300]}")

    async def dispatch_pending(self) -> DispatchReport:
        """Deliver one batch of due outbox rows. Serialised by an in-process lock."""
        async with self._lock:
            if self._client is not None:
                return await self._dispatch_batch(self._client)
            async with httpx.AsyncClient(timeout=self.settings.notification_timeout_seconds) as client:
                return await self._dispatch_batch(client)

    async def _dispatch_batch(self, client: httpx.AsyncClient) -> DispatchReport:
        report = DispatchReport()
        db = self.session_factory()
        try:
            now = utcnow()
            events = (
                db.query(OutboxEvent)
                .filter(OutboxEvent.delivered == False)  # noqa: E712
                .filter(OutboxEvent.dead == False)  # noqa: E712
                .filter(OutboxEvent.available_at <= now)
                .order_by(OutboxEvent.created_at.asc())
                .limit(self.settings.dispatcher_batch_size)
                .all()
            )
            for evt in events:
                target = self.resolve_target(evt.topic)
                if target is None:
                    # No peer configured for this topic; mark delivered to avoid infinite growth
                    log.info("no target configured, dropping event", extra={"topic": evt.topic, "event_id": evt.id})
                    evt.delivered = True
                    evt.delivered_at = utcnow()
                    evt.last_error = "no target configured"
                    report.untargeted += 1
                    continue

                try:
                    await self._deliver_one(client, evt, target)
                except NotificationDeliveryFailed as failure:
                    evt.attempt_count = (evt.attempt_count or 0) + 1
                    evt.last_error = failure.reason
                    if evt.attempt_count >= self.settings.dispatcher_max_attempts:
                        evt.dead = True
                        report.dead += 1
                        log.error(
                            "NotificationDeliveryFailed: giving up",
                            extra={"topic": evt.topic, "event_id": evt.id, "target": target, "attempt": evt.attempt_count},
                        )
                    else:
                        evt.available_at = _schedule_next(evt.attempt_count)
                        report.failed += 1
                        log.warning(
                            "NotificationDeliveryFailed: %s",
                            failure.reason,
                            extra={"topic": evt.topic, "event_id": evt.id, "target": target, "attempt": evt.attempt_count},
                        )
                    continue

                evt.delivered = True
                evt.delivered_at = utcnow()
                evt.last_error = None
                report.delivered += 1

            db.commit()
        finally:
            db.close()
        return report

    async def run_forever(self) -> None:
        """Background worker started by the application factory."""
        interval = self.settings.dispatcher_poll_interval_seconds
        while True:
            try:
                await self.dispatch_pending()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Never crash the server because the dispatcher had a bad day
                log.exception("dispatcher pass failed")
            await asyncio.sleep(interval)
