import itertools
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from ..core.config import REPORT_NOTIFY_RADIUS_METERS
from ..core.models import Alert, GeoPoint, Report, Severity, utcnow

_sequence = itertools.count(1)


class EventType(str, Enum):
    NEW_REPORT = "newReport"
    REPORT_VERIFIED = "reportVerified"
    REPORT_MODERATED = "reportModerated"
    NEW_ALERT = "newAlert"
    ALERT_UPDATED = "alertUpdated"
    ALERT_CANCELLED = "alertCancelled"
    ALERT_RESOLVED = "alertResolved"


@dataclass(frozen=True)
class ProximityEvent:
    """A state change that is only relevant within `radius_meters` of `origin`."""

    type: EventType
    origin: GeoPoint
    radius_meters: float
    payload: Dict[str, Any]
    severity: Severity = Severity.LOW
    created_at: datetime = field(default_factory=utcnow)
    sequence: int = field(default_factory=lambda: next(_sequence))


def report_event(event_type: EventType, report: Report, **extra) -> ProximityEvent:
    payload = {
        "reportId": report.id,
        "category": report.category,
        "title": report.title,
        "status": report.status.value,
        "verificationStatus": report.verification_status.value,
        "location": report.location.to_dict(),
        "confirmCount": report.tally.confirm,
        "denyCount": report.tally.deny,
        **extra,
    }
    return ProximityEvent(
        type=event_type,
        origin=report.location,
        radius_meters=REPORT_NOTIFY_RADIUS_METERS,
        payload=payload,
    )


def alert_event(event_type: EventType, alert: Alert) -> ProximityEvent:
    return ProximityEvent(
        type=event_type,
        origin=alert.center,
        radius_meters=alert.radius_meters,
        payload=alert.to_dict(),
        severity=alert.severity,
    )
