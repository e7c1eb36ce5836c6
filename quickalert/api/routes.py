import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from ..core.config import DEFAULT_ALERT_RADIUS_METERS, RATE_LIMIT_ALERTS, RATE_LIMIT_VOTES
from ..core.exceptions import Forbidden, NotFound
from ..core.models import Actor, GeoPoint
from ..core.state import AppServices
from ..services.alert_lifecycle import AlertInput
from ..services.sse import event_stream
from ..utils.security import get_actor, get_api_key, limiter

router = APIRouter(prefix="/api", dependencies=[Depends(get_api_key)])


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treats naive timestamps from clients as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Pydantic models for API requests
class ReportCreate(BaseModel):
    """A community incident report."""
    category: str
    title: str
    description: str = ""
    lat: float
    lng: float


class VoteRequest(BaseModel):
    vote: str  # "confirm" or "deny"
    lat: float  # Voter's current position
    lng: float


class ModerationRequest(BaseModel):
    action: str  # approve, reject, flag, escalate, resolve
    reason: Optional[str] = None


class AlertCreate(BaseModel):
    """A manually issued alert. `radius` is in meters and is clamped to 100 m - 50 km."""
    model_config = ConfigDict(populate_by_name=True)

    title: str
    description: str = ""
    severity: str = "medium"
    lat: float
    lng: float
    radius: float = DEFAULT_ALERT_RADIUS_METERS
    type: str = "community"
    effective_until: Optional[datetime] = Field(default=None, alias="effectiveUntil")


class AlertUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    severity: Optional[str] = None
    radius: Optional[float] = None
    title: Optional[str] = None
    description: Optional[str] = None
    effective_until: Optional[datetime] = Field(default=None, alias="effectiveUntil")


class TransitionRequest(BaseModel):
    action: str  # resolve, cancel, reactivate, expire
    reason: Optional[str] = None


class LocationUpdate(BaseModel):
    lat: float
    lng: float


# --- Reports ---
@router.post("/reports", status_code=201, summary="Submit Report")
async def submit_report(
    body: ReportCreate,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    report = await services.reports.submit(
        actor,
        category=body.category,
        title=body.title,
        description=body.description,
        location=GeoPoint.parse(body.lat, body.lng),
    )
    return {"success": True, "data": report.to_dict()}


@router.get("/reports/{report_id}", summary="Get Report")
async def get_report(
    report_id: str,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    report = await services.reports.get(report_id)
    data = report.to_dict()
    # Callers only ever see their own vote, never the full voter list
    own = report.votes.get(actor.user_id)
    data["userVote"] = own.vote.value if own else None
    return {"success": True, "data": data}


@router.post("/reports/{report_id}/votes", summary="Vote On Report")
@limiter.limit(RATE_LIMIT_VOTES)
async def vote_on_report(
    request: Request,
    report_id: str,
    body: VoteRequest,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    """
    Confirms or denies a report. The voter must be within 2 km of it.

    Returns the updated tallies and whether this vote escalated the report
    into an alert.
    """
    result = await services.votes.cast_vote(
        report_id, actor.user_id, body.vote, GeoPoint.parse(body.lat, body.lng)
    )
    return {"success": True, "message": f"Vote {body.vote} recorded", "data": result.to_dict()}


@router.delete("/reports/{report_id}/votes", summary="Retract Vote")
async def retract_vote(
    report_id: str,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    result = await services.votes.retract_vote(report_id, actor.user_id)
    return {"success": True, "data": result.to_dict()}


@router.post("/reports/{report_id}/moderate", summary="Moderate Report")
async def moderate_report(
    report_id: str,
    body: ModerationRequest,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    report = await services.reports.moderate(report_id, body.action, actor, body.reason)
    return {"success": True, "data": report.to_dict()}


# --- Alerts ---
@router.post("/alerts", status_code=201, summary="Issue Alert")
@limiter.limit(RATE_LIMIT_ALERTS)
async def create_alert(
    request: Request,
    body: AlertCreate,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    alert = await services.alerts.create(
        AlertInput(
            title=body.title,
            description=body.description,
            lat=body.lat,
            lng=body.lng,
            severity=body.severity,
            radius_meters=body.radius,
            type=body.type,
            effective_until=_aware(body.effective_until),
        ),
        actor,
    )
    return {"success": True, "message": "Alert created and broadcast", "data": alert.to_dict()}


@router.get("/alerts/nearby", summary="Active Alerts Near A Point")
async def nearby_alerts(
    lat: float,
    lng: float,
    radius: float = Query(default=DEFAULT_ALERT_RADIUS_METERS, gt=0),
    services: AppServices = Depends(get_services),
):
    alerts = await services.alerts.nearby_active(GeoPoint.parse(lat, lng), radius)
    return {"success": True, "data": [a.to_dict() for a in alerts]}


@router.get("/alerts/{alert_id}", summary="Get Alert")
async def get_alert(alert_id: str, services: AppServices = Depends(get_services)):
    alert = await services.alerts.get(alert_id)
    return {"success": True, "data": alert.to_dict()}


@router.patch("/alerts/{alert_id}", summary="Update Alert")
async def update_alert(
    alert_id: str,
    body: AlertUpdate,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    alert = await services.alerts.update(
        alert_id,
        actor,
        severity=body.severity,
        radius_meters=body.radius,
        title=body.title,
        description=body.description,
        effective_until=_aware(body.effective_until),
    )
    return {"success": True, "data": alert.to_dict()}


@router.post("/alerts/{alert_id}/transition", summary="Transition Alert")
async def transition_alert(
    alert_id: str,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    alert = await services.alerts.transition(alert_id, body.action, actor, body.reason)
    return {"success": True, "data": alert.to_dict()}


# --- Live stream ---
@router.get("/stream", summary="Proximity Event Stream")
async def stream(
    request: Request,
    lat: float,
    lng: float,
    services: AppServices = Depends(get_services),
):
    """
    Joins the proximity broker at the given point and streams events (SSE)
    for reports and alerts whose effect radius covers it.

    The first frame is a `connected` event carrying the connection id used
    to move or leave. The connection is registered once streaming starts and
    removed when the stream closes.
    """
    point = GeoPoint.parse(lat, lng)
    connection_id = uuid.uuid4().hex
    return StreamingResponse(
        event_stream(request, services.broker, connection_id, point),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Connection-Id": connection_id,
        },
    )


@router.put("/stream/{connection_id}/location", summary="Move Connection")
async def move_connection(
    connection_id: str,
    body: LocationUpdate,
    services: AppServices = Depends(get_services),
):
    if services.broker.get(connection_id) is None:
        raise NotFound(f"Connection {connection_id} is not joined")
    point = GeoPoint.parse(body.lat, body.lng)
    services.broker.join(connection_id, point)
    return {"success": True, "data": {"connectionId": connection_id, "location": point.to_dict()}}


@router.delete("/stream/{connection_id}", summary="Leave Stream")
async def leave_stream(connection_id: str, services: AppServices = Depends(get_services)):
    if not services.broker.leave(connection_id):
        raise NotFound(f"Connection {connection_id} is not joined")
    return {"success": True}


@router.get("/stream/population", summary="Live Population Estimate")
async def population(
    lat: float,
    lng: float,
    radius: float = Query(default=DEFAULT_ALERT_RADIUS_METERS, gt=0),
    actor: Actor = Depends(get_actor),
    services: AppServices = Depends(get_services),
):
    if not actor.is_privileged:
        raise Forbidden("Only responders and administrators can view population estimates")
    count = services.broker.population(GeoPoint.parse(lat, lng), radius)
    return {"success": True, "data": {"count": count, "radius": radius}}
