import asyncio
import json
import logging

from fastapi import Request

from ..core.config import STREAM_KEEPALIVE_SECONDS
from ..core.models import GeoPoint
from .broker import ProximityBroker
from .events import ProximityEvent
from .notification_policy import urgency_for_event

logger = logging.getLogger(__name__)


def format_event(event: ProximityEvent) -> str:
    """Formats a delivered event as an SSE frame, with the client urgency hints attached."""
    data = {
        **event.payload,
        "notification": urgency_for_event(event).to_dict(),
    }
    return f"event: {event.type.value}\nid: {event.sequence}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def event_stream(
    request: Request,
    broker: ProximityBroker,
    connection_id: str,
    point: GeoPoint,
    keepalive_seconds: float = STREAM_KEEPALIVE_SECONDS,
):
    """
    Joins the broker at `point` and yields server-sent events for that connection.

    The registration only exists while the generator runs: nothing is joined
    until the first frame is pulled, and it is removed on exit, whether the
    client disconnected or the connection left the broker.
    """
    subscription = broker.join(connection_id, point)
    try:
        hello = {"connectionId": connection_id, "location": point.to_dict()}
        yield f"event: connected\ndata: {json.dumps(hello)}\n\n"

        while True:
            if await request.is_disconnected():
                logger.info(f"Client {connection_id} disconnected, stopping event stream.")
                break
            if not broker.is_current(subscription):
                logger.info(f"Connection {connection_id} left the broker, stopping event stream.")
                break

            try:
                event = await asyncio.wait_for(subscription.queue.get(), timeout=keepalive_seconds)
                yield format_event(event)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
    finally:
        if broker.is_current(subscription):
            broker.leave(connection_id)
        logger.info(f"Event stream for {connection_id} finished.")
