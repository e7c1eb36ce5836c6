import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..core.config import SUBSCRIBER_QUEUE_SIZE
from ..core.models import GeoPoint, utcnow
from ..utils.geolocation import SpatialIndex
from .events import ProximityEvent

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """A live connection's current location and its pending deliveries."""

    connection_id: str
    point: GeoPoint
    queue: asyncio.Queue
    joined_at: datetime = field(default_factory=utcnow)
    moved_at: Optional[datetime] = None


class ProximityBroker:
    """
    Fans out state-change events to connections inside each event's effect radius.

    Registrations live only in this process. A connection that leaves loses
    its queue; rejoining starts from an empty queue, so nothing published
    during the gap is ever delivered.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._index: SpatialIndex[str, Subscription] = SpatialIndex()

    def join(self, connection_id: str, point: GeoPoint) -> Subscription:
        """Registers a connection, or moves it if already registered (its queue is kept)."""
        subscription = self._index.get(connection_id)
        if subscription is None:
            subscription = Subscription(
                connection_id=connection_id,
                point=point,
                queue=asyncio.Queue(maxsize=self.queue_size),
            )
            logger.info(f"Connection {connection_id} joined at {point.lat:.5f},{point.lng:.5f}. Total: {len(self._index) + 1}")
        else:
            subscription.point = point
            subscription.moved_at = utcnow()
            logger.debug(f"Connection {connection_id} moved to {point.lat:.5f},{point.lng:.5f}")
        self._index.add(connection_id, point, subscription)
        return subscription

    def leave(self, connection_id: str) -> bool:
        subscription = self._index.remove(connection_id)
        if subscription is None:
            return False
        logger.info(f"Connection {connection_id} left. Remaining: {len(self._index)}")
        return True

    def get(self, connection_id: str) -> Optional[Subscription]:
        return self._index.get(connection_id)

    def is_current(self, subscription: Subscription) -> bool:
        """True while `subscription` is still the registration for its connection id."""
        return self._index.get(subscription.connection_id) is subscription

    def recipients(self, event: ProximityEvent) -> List[Subscription]:
        return self._index.nearby(event.origin, event.radius_meters)

    def publish(self, event: ProximityEvent) -> int:
        """
        Delivers `event` once to every connection within its radius.

        Never blocks: a connection whose queue is full misses this event and
        the remaining connections are still served. Returns the number of
        successful deliveries.
        """
        delivered = 0
        for subscription in self.recipients(event):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.type.value} for connection {subscription.connection_id}: queue full"
                )
        logger.info(f"{event.type.value} delivered to {delivered} connection(s) within {event.radius_meters:.0f}m")
        return delivered

    def population(self, center: GeoPoint, radius_meters: float) -> int:
        """Live count of connections within the radius."""
        return len(self._index.nearby(center, radius_meters))

    def __len__(self) -> int:
        return len(self._index)
