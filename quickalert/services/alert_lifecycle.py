import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.config import (
    DEFAULT_ALERT_RADIUS_METERS,
    MAX_ALERT_RADIUS_METERS,
    MIN_ALERT_RADIUS_METERS,
)
from ..core.exceptions import Forbidden, InvalidTransition, NotFound, ValidationError
from ..core.locks import KeyedLock
from ..core.models import (
    Actor,
    Alert,
    AlertSource,
    AlertSourceType,
    AlertStatus,
    GeoPoint,
    SYSTEM_ACTOR,
    Severity,
    utcnow,
)
from ..db.database import Database
from ..utils.geolocation import BoundingBox, haversine_distance, within_radius
from .broker import ProximityBroker
from .events import EventType, alert_event

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 2000

ACTIONS = ("resolve", "cancel", "expire", "reactivate")


@dataclass
class AlertInput:
    title: str
    description: str
    lat: float
    lng: float
    severity: Any = Severity.MEDIUM
    radius_meters: Optional[float] = None
    type: str = "community"
    effective_until: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def clamp_radius(radius_meters: Optional[float]) -> float:
    """Validates an effect radius and clamps it into the supported band."""
    if radius_meters is None:
        return DEFAULT_ALERT_RADIUS_METERS
    try:
        radius = float(radius_meters)
    except (TypeError, ValueError):
        raise ValidationError("Radius must be a number of meters") from None
    if not math.isfinite(radius) or radius <= 0:
        raise ValidationError(f"Radius must be a positive number of meters, got {radius_meters!r}")
    return min(MAX_ALERT_RADIUS_METERS, max(MIN_ALERT_RADIUS_METERS, radius))


class AlertLifecycle:
    """
    State machine for alerts, whether issued by hand or spawned by escalation.

    active -> resolved | cancelled | expired, and a privileged reactivate from
    any of those back to active. Every transition is persisted, then published
    to the connections inside the alert's radius.
    """

    def __init__(self, db: Database, broker: ProximityBroker, locks: Optional[KeyedLock] = None):
        self.db = db
        self.broker = broker
        self.locks = locks or KeyedLock()

    def new_alert(
        self,
        data: AlertInput,
        actor: Actor,
        source: Optional[AlertSource] = None,
        now: Optional[datetime] = None,
    ) -> Alert:
        """Validates input and builds an active alert without persisting it."""
        now = now or utcnow()
        title = (data.title or "").strip()
        if not title:
            raise ValidationError("Alert title is required")
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title cannot exceed {TITLE_MAX_LENGTH} characters")
        description = (data.description or "").strip()
        if len(description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")
        if data.effective_until is not None and data.effective_until <= now:
            raise ValidationError("effectiveUntil must be in the future")

        return Alert(
            id=uuid.uuid4().hex,
            title=title,
            description=description,
            type=data.type or "community",
            severity=Severity.parse(data.severity),
            center=GeoPoint.parse(data.lat, data.lng),
            radius_meters=clamp_radius(data.radius_meters),
            status=AlertStatus.ACTIVE,
            source=source,
            metadata=dict(data.metadata),
            created_by=actor.user_id,
            created_at=now,
            updated_at=now,
            effective_until=data.effective_until,
        )

    async def create(self, data: AlertInput, actor: Actor) -> Alert:
        """Issues a manual alert. Only privileged roles may do this."""
        if not actor.is_privileged:
            raise Forbidden("Only responders and administrators can issue alerts")
        alert = self.new_alert(data, actor, source=AlertSource(type=AlertSourceType.MANUAL))
        alert.metadata["adminVerified"] = True

        async with self.db.transaction() as tx:
            await tx.insert_alert(alert)
        logger.info(f"Alert {alert.id} issued by {actor.user_id} ({alert.severity.value}, {alert.radius_meters:.0f}m)")
        self.announce(alert)
        return alert

    def announce(self, alert: Alert) -> int:
        return self.broker.publish(alert_event(EventType.NEW_ALERT, alert))

    async def get(self, alert_id: str) -> Alert:
        alert = await self.db.get_alert(alert_id)
        if alert is None:
            raise NotFound(f"Alert {alert_id} not found")
        return alert

    async def nearby_active(self, point: GeoPoint, radius_meters: float) -> List[Alert]:
        """Active alerts whose center lies within the radius, closest first."""
        box = BoundingBox.around(point, radius_meters)
        alerts = await self.db.list_active_alerts_in_band(box.min_lat, box.max_lat)
        now = utcnow()
        found = within_radius(
            (a for a in alerts if not a.is_overdue(now)),
            point,
            radius_meters,
            key=lambda a: a.center,
        )
        return sorted(found, key=lambda a: haversine_distance(point, a.center))

    async def _apply(
        self,
        alert_id: str,
        change: Callable[[Alert], None],
        event_type: EventType,
    ) -> Alert:
        async with self.locks.hold(alert_id):
            alert = await self.get(alert_id)
            change(alert)
            alert.updated_at = utcnow()
            async with self.db.transaction() as tx:
                await tx.update_alert(alert)
        self.broker.publish(alert_event(event_type, alert))
        return alert

    @staticmethod
    def _require_active(alert: Alert, action: str):
        if alert.status is not AlertStatus.ACTIVE:
            raise InvalidTransition(f"Cannot {action} alert {alert.id}: status is {alert.status.value}")

    @staticmethod
    def _require_owner_or_privileged(alert: Alert, actor: Actor, action: str):
        if not (actor.is_privileged or actor.user_id == alert.created_by):
            raise Forbidden(f"Not authorized to {action} this alert")

    @staticmethod
    def _close(alert: Alert, status: AlertStatus, actor: Actor, reason: Optional[str]):
        alert.status = status
        alert.status_changed_at = utcnow()
        alert.status_changed_by = actor.user_id
        alert.status_reason = reason

    async def resolve(self, alert_id: str, actor: Actor, reason: Optional[str] = None) -> Alert:
        def change(alert: Alert):
            self._require_owner_or_privileged(alert, actor, "resolve")
            self._require_active(alert, "resolve")
            self._close(alert, AlertStatus.RESOLVED, actor, reason)

        alert = await self._apply(alert_id, change, EventType.ALERT_RESOLVED)
        logger.info(f"Alert {alert_id} resolved by {actor.user_id}")
        return alert

    async def cancel(self, alert_id: str, actor: Actor, reason: Optional[str] = None) -> Alert:
        def change(alert: Alert):
            self._require_owner_or_privileged(alert, actor, "cancel")
            self._require_active(alert, "cancel")
            self._close(alert, AlertStatus.CANCELLED, actor, reason or "Cancelled by administrator")

        alert = await self._apply(alert_id, change, EventType.ALERT_CANCELLED)
        logger.info(f"Alert {alert_id} cancelled by {actor.user_id}")
        return alert

    async def expire(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        """System transition for an alert whose effective window has closed."""
        now = now or utcnow()

        def change(alert: Alert):
            self._require_active(alert, "expire")
            if not alert.is_overdue(now):
                raise InvalidTransition(f"Alert {alert.id} is still within its effective window")
            self._close(alert, AlertStatus.EXPIRED, SYSTEM_ACTOR, "Effective window ended")

        alert = await self._apply(alert_id, change, EventType.ALERT_UPDATED)
        logger.info(f"Alert {alert_id} expired")
        return alert

    async def reactivate(self, alert_id: str, actor: Actor, reason: Optional[str] = None) -> Alert:
        """
        Returns a terminal alert to active. Administrators only.

        Verification metadata is left as it was. A lapsed effectiveUntil is
        cleared so the next expiry sweep does not immediately end the alert
        again; a future one is kept.
        """
        if not actor.is_admin:
            raise Forbidden("Only administrators can reactivate alerts")
        now = utcnow()

        def change(alert: Alert):
            if alert.status is AlertStatus.ACTIVE:
                raise InvalidTransition(f"Alert {alert.id} is already active")
            alert.status = AlertStatus.ACTIVE
            alert.status_changed_at = now
            alert.status_changed_by = actor.user_id
            alert.status_reason = reason
            if alert.is_overdue(now):
                alert.effective_until = None

        alert = await self._apply(alert_id, change, EventType.ALERT_UPDATED)
        logger.info(f"Alert {alert_id} reactivated by {actor.user_id}")
        return alert

    async def update(
        self,
        alert_id: str,
        actor: Actor,
        severity: Any = None,
        radius_meters: Optional[float] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        effective_until: Optional[datetime] = None,
    ) -> Alert:
        """Privileged adjustment of an active alert, e.g. raising an escalated alert's severity."""
        if not actor.is_privileged:
            raise Forbidden("Only responders and administrators can update alerts")
        now = utcnow()
        new_severity = Severity.parse(severity) if severity is not None else None
        new_radius = clamp_radius(radius_meters) if radius_meters is not None else None
        if effective_until is not None and effective_until <= now:
            raise ValidationError("effectiveUntil must be in the future")
        if title is not None and not title.strip():
            raise ValidationError("Alert title is required")

        def change(alert: Alert):
            self._require_active(alert, "update")
            if new_severity is not None:
                alert.severity = new_severity
            if new_radius is not None:
                alert.radius_meters = new_radius
            if title is not None:
                alert.title = title.strip()[:TITLE_MAX_LENGTH]
            if description is not None:
                alert.description = description.strip()[:DESCRIPTION_MAX_LENGTH]
            if effective_until is not None:
                alert.effective_until = effective_until
            alert.metadata["adminVerified"] = True

        alert = await self._apply(alert_id, change, EventType.ALERT_UPDATED)
        logger.info(f"Alert {alert_id} updated by {actor.user_id}")
        return alert

    async def transition(self, alert_id: str, action: str, actor: Actor, reason: Optional[str] = None) -> Alert:
        if action == "resolve":
            return await self.resolve(alert_id, actor, reason)
        if action == "cancel":
            return await self.cancel(alert_id, actor, reason)
        if action == "reactivate":
            return await self.reactivate(alert_id, actor, reason)
        if action == "expire":
            if not actor.is_admin:
                raise Forbidden("Only administrators can force an expiry check")
            return await self.expire(alert_id)
        raise ValidationError(f"Unknown action {action!r}; expected one of {', '.join(ACTIONS)}")

    async def expire_due(self, now: Optional[datetime] = None) -> List[Alert]:
        """Expires every active alert whose window closed before `now`. Used by the periodic sweep."""
        now = now or utcnow()
        expired = []
        for alert in await self.db.list_overdue_alerts(now):
            try:
                expired.append(await self.expire(alert.id, now))
            except InvalidTransition:
                # Resolved or reactivated between the listing and the lock
                logger.debug(f"Skipping expiry of alert {alert.id}")
        return expired
