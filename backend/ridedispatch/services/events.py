"""
Per-tenant event fan-out.

Each subscriber owns a bounded asyncio.Queue. Publishing never blocks: when
a subscriber's queue is full the event is dropped for that subscriber only.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ridedispatch.core.config import settings
from ridedispatch.models.fleet_models import VanTask, VanTaskPublic
from ridedispatch.models.ride_models import Ride, RidePublic

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    type: str
    payload: Dict[str, Any]
    tenant_id: uuid.UUID
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_sse(self) -> str:
        data = json.dumps(
            {"payload": self.payload, "timestamp": self.timestamp.isoformat()},
            default=str,
        )
        return f"event: {self.type}\ndata: {data}\n\n"


class EventPublisher:
    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.EVENT_QUEUE_SIZE
        self._subscribers: Dict[uuid.UUID, List[asyncio.Queue]] = {}

    def subscribe(self, tenant_id: uuid.UUID) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(tenant_id, []).append(queue)
        return queue

    def unsubscribe(self, tenant_id: uuid.UUID, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(tenant_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(tenant_id, None)

    def subscriber_count(self, tenant_id: uuid.UUID) -> int:
        return len(self._subscribers.get(tenant_id, []))

    def publish(self, event_type: str, payload: Dict[str, Any], tenant_id: uuid.UUID) -> StreamEvent:
        """Deliver an event to every subscriber of the tenant (fire-and-forget)."""
        event = StreamEvent(type=event_type, payload=payload, tenant_id=tenant_id)
        for queue in list(self._subscribers.get(tenant_id, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event_type} event for tenant {tenant_id}: subscriber queue full")
        logger.debug(f"Published {event_type} for tenant {tenant_id}")
        return event


def ride_payload(ride: Ride) -> Dict[str, Any]:
    return RidePublic.model_validate(ride).model_dump(mode="json")


def tasks_payload(van_id: uuid.UUID, tasks: Sequence[VanTask]) -> Dict[str, Any]:
    return {
        "van_id": str(van_id),
        "tasks": [VanTaskPublic.model_validate(task).model_dump(mode="json") for task in tasks],
    }
