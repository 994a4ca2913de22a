"""
Change feed for slot, reservation and device records

Every committed mutation is published once. Consumers either poll with
since(seq) or subscribe to an asyncio queue for push delivery.
"""
import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set

from .utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_SLOT = "slot"
ENTITY_RESERVATION = "reservation"
ENTITY_DEVICE = "device"


@dataclass
class ChangeEvent:
    seq: int
    entity: str
    op: str  # insert, update, delete
    entity_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    committed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["committed_at"] = self.committed_at.isoformat()
        return payload


class ChangeFeed:
    """
    Process-local change feed with bounded history

    Usage:
        feed = ChangeFeed(history=1000)
        queue = feed.subscribe()
        feed.publish("slot", "update", slot_id, {"status": "reserved"})
        event = await queue.get()
    """

    def __init__(self, history: int = 1000, subscriber_queue_size: int = 1000):
        self._history: Deque[ChangeEvent] = deque(maxlen=history)
        self._subscribers: Set[asyncio.Queue] = set()
        self._subscriber_queue_size = subscriber_queue_size
        self._seq = 0

    @property
    def last_seq(self) -> int:
        return self._seq

    def publish(self, entity: str, op: str, entity_id, data: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        self._seq += 1
        change = ChangeEvent(
            seq=self._seq,
            entity=entity,
            op=op,
            entity_id=str(entity_id),
            data=data or {},
        )
        self._history.append(change)

        for queue in list(self._subscribers):
            try:
                queue.put_nowait(change)
            except asyncio.QueueFull:
                # A slow subscriber loses events; it can resync with since()
                logger.warning(f"Change feed subscriber queue full, dropping seq={change.seq}")

        return change

    def since(self, seq: int, limit: int = 100) -> List[ChangeEvent]:
        """Events with sequence number greater than seq, oldest first"""
        return [change for change in self._history if change.seq > seq][:limit]

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)


class Outbox:
    """
    Side effects collected inside a transaction

    Nothing is published until release() is called after the commit, so a
    rolled-back operation emits no change events and no notifications.
    """

    def __init__(self):
        self.changes: List[tuple] = []
        self.lifecycle: List[Any] = []

    def change(self, entity: str, op: str, entity_id, data: Optional[Dict[str, Any]] = None):
        self.changes.append((entity, op, entity_id, data or {}))

    def notify(self, event):
        self.lifecycle.append(event)

    def release(self, feed: Optional[ChangeFeed], dispatcher=None):
        if feed is not None:
            for entity, op, entity_id, data in self.changes:
                feed.publish(entity, op, entity_id, data)
        if dispatcher is not None:
            for event in self.lifecycle:
                dispatcher.publish(event)
        self.changes.clear()
        self.lifecycle.clear()
