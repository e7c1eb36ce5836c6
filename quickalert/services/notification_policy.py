from dataclasses import dataclass
from typing import Optional, Tuple

from ..core.models import Severity
from .events import EventType, ProximityEvent

SHORT_VIBRATION = (200, 100, 200)
LONG_VIBRATION = (500, 200, 500, 200, 500)


@dataclass(frozen=True)
class NotificationUrgency:
    """How loudly a client should surface a delivered event."""

    sound: Optional[str]
    vibration: Tuple[int, ...]
    require_interaction: bool

    def to_dict(self):
        return {
            "sound": self.sound,
            "vibration": list(self.vibration),
            "requireInteraction": self.require_interaction,
        }


SILENT = NotificationUrgency(sound=None, vibration=(), require_interaction=False)
QUIET = NotificationUrgency(sound=None, vibration=SHORT_VIBRATION, require_interaction=False)


def urgency_for(event_type: EventType, severity: Severity = Severity.LOW) -> NotificationUrgency:
    """Maps an event type and severity to client-side urgency. Pure; no I/O."""
    if event_type is EventType.NEW_ALERT:
        if severity is Severity.CRITICAL:
            return NotificationUrgency(sound="critical", vibration=LONG_VIBRATION, require_interaction=True)
        if severity is Severity.HIGH:
            return NotificationUrgency(sound="alert", vibration=SHORT_VIBRATION, require_interaction=True)
        return QUIET
    if event_type in (EventType.NEW_REPORT, EventType.REPORT_VERIFIED):
        return QUIET
    # Updates, cancellations, resolutions and moderation only refresh client state
    return SILENT


def urgency_for_event(event: ProximityEvent) -> NotificationUrgency:
    return urgency_for(event.type, event.severity)
