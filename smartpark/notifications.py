"""
Notification Dispatcher

Consumes reservation lifecycle events and hands rendered messages to
outbound sinks (push worker queue, logs). Publishing never blocks the
caller: events are buffered and delivered by a background worker,
at-least-once, with event_id available for downstream deduplication.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from . import metrics
from .utils import isoformat, utcnow

logger = logging.getLogger(__name__)

RESERVATION_CREATED = "reservation.created"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_EXPIRED = "reservation.expired"
RESERVATION_COMPLETED = "reservation.completed"


@dataclass
class LifecycleEvent:
    """A reservation lifecycle transition, addressed to the reservation's user"""
    kind: str
    reservation_id: str
    user_id: str
    slot_id: str
    slot_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    occurred_at: datetime = field(default_factory=utcnow)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_reservation(cls, kind: str, reservation) -> "LifecycleEvent":
        return cls(
            kind=kind,
            reservation_id=str(reservation.id),
            user_id=reservation.user_id,
            slot_id=str(reservation.slot_id),
            slot_code=reservation.slot_code,
            expires_at=reservation.expires_at,
        )


@dataclass
class Notification:
    """Rendered user-facing message"""
    event_id: str
    kind: str
    user_id: str
    title: str
    body: str
    data: Dict[str, Any]

    def to_json(self) -> str:
        return json.dumps({
            "event_id": self.event_id,
            "kind": self.kind,
            "user_id": self.user_id,
            "title": self.title,
            "body": self.body,
            "data": self.data,
        })


def render_notification(event: LifecycleEvent) -> Notification:
    """Build the title/body pair shown to the driver"""
    slot = event.slot_code or event.slot_id
    expires = event.expires_at.strftime("%H:%M UTC") if event.expires_at else None

    if event.kind == RESERVATION_CREATED:
        title = "Reservation confirmed"
        body = f"Slot {slot} is reserved for you until {expires}."
    elif event.kind == RESERVATION_CANCELLED:
        title = "Reservation cancelled"
        body = f"Your reservation for slot {slot} was cancelled."
    elif event.kind == RESERVATION_EXPIRED:
        title = "Reservation expired"
        body = f"Your reservation for slot {slot} expired at {expires}."
    elif event.kind == RESERVATION_COMPLETED:
        title = "Thanks for parking"
        body = f"Your reservation for slot {slot} is complete."
    else:
        title = "Reservation update"
        body = f"Your reservation for slot {slot} changed."

    return Notification(
        event_id=event.event_id,
        kind=event.kind,
        user_id=event.user_id,
        title=title,
        body=body,
        data={
            "reservation_id": event.reservation_id,
            "slot_id": event.slot_id,
            "slot_code": event.slot_code,
            "expires_at": isoformat(event.expires_at),
            "occurred_at": isoformat(event.occurred_at),
        },
    )


# ============================================================
# Sinks
# ============================================================

class NotificationSink(Protocol):
    name: str

    async def send(self, notification: Notification) -> None:
        ...


class LoggingSink:
    """Writes notifications to the application log"""

    name = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"Notification {notification.kind} for user {notification.user_id}: {notification.body}"
        )


class RedisListSink:
    """Pushes notifications onto a Redis list consumed by the push worker"""

    name = "redis"

    def __init__(self, redis_client, key: str = "parking:notifications"):
        self.redis = redis_client
        self.key = key

    async def send(self, notification: Notification) -> None:
        await self.redis.lpush(self.key, notification.to_json())


# ============================================================
# Dispatcher
# ============================================================

class NotificationDispatcher:
    """
    Buffered, fire-and-forget dispatcher

    Usage:
        dispatcher = NotificationDispatcher([LoggingSink()])
        await dispatcher.start()
        dispatcher.publish(LifecycleEvent.from_reservation(RESERVATION_CREATED, reservation))
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        sinks: List[NotificationSink],
        max_queue: int = 1000,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        self.sinks = sinks
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Notification dispatcher started with sinks: {[s.name for s in self.sinks]}")

    async def stop(self, drain_timeout: float = 5.0):
        """Deliver what is buffered (bounded by drain_timeout), then stop"""
        if not self.running:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Notification dispatcher stopped with {self._queue.qsize()} undelivered events")

        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Notification dispatcher stopped")

    def publish(self, event: LifecycleEvent) -> bool:
        """Enqueue without waiting; returns False when the buffer is full"""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.error(f"Notification queue full, dropping {event.kind} for reservation {event.reservation_id}")
            metrics.track_notification(event.kind, "dropped")
            return False

    async def flush(self):
        """Wait until every published event has been processed"""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run_loop(self):
        while self.running:
            try:
                event = await self._queue.get()
            except asyncio.CancelledError:
                break

            try:
                await self._deliver(event)
            except Exception as e:
                logger.error(f"Notification delivery error for {event.event_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: LifecycleEvent):
        notification = render_notification(event)
        for sink in self.sinks:
            await self._send_with_retry(sink, notification)

    async def _send_with_retry(self, sink: NotificationSink, notification: Notification):
        for attempt in range(1, self.max_attempts + 1):
            try:
                await sink.send(notification)
                metrics.track_notification(notification.kind, "delivered")
                return
            except Exception as e:
                if attempt == self.max_attempts:
                    logger.error(
                        f"Sink {sink.name} failed {attempt} times for event {notification.event_id}: {e}"
                    )
                    metrics.track_notification(notification.kind, "failed")
                    return
                logger.warning(f"Sink {sink.name} failed (attempt {attempt}), retrying: {e}")
                metrics.track_notification(notification.kind, "retried")
                await asyncio.sleep(self.retry_delay * (2 ** (attempt - 1)))
