import logging
import uuid
from typing import Optional

from ..core.exceptions import ConcurrencyConflict, Forbidden, NotFound, ValidationError
from ..core.locks import KeyedLock
from ..core.models import (
    REPORT_CATEGORIES,
    Actor,
    GeoPoint,
    Report,
    ReportStatus,
    VerificationStatus,
    utcnow,
)
from ..db.database import Database
from .broker import ProximityBroker
from .events import EventType, report_event

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 5000

MODERATION_ACTIONS = {
    "approve": (ReportStatus.VERIFIED, VerificationStatus.VERIFIED),
    "reject": (ReportStatus.REJECTED, VerificationStatus.FALSE_REPORT),
    "flag": (ReportStatus.FLAGGED, None),
    "escalate": (ReportStatus.ESCALATED, None),
    "resolve": (ReportStatus.RESOLVED, None),
}


class ReportService:
    """Submission and moderation of community reports."""

    def __init__(self, db: Database, broker: ProximityBroker, locks: Optional[KeyedLock] = None):
        self.db = db
        self.broker = broker
        # Must be the same lock set the vote ledger uses
        self.locks = locks or KeyedLock()

    async def submit(
        self,
        actor: Actor,
        category: str,
        title: str,
        location: GeoPoint,
        description: str = "",
    ) -> Report:
        if category not in REPORT_CATEGORIES:
            raise ValidationError(f"Invalid category: {category!r}")
        title = (title or "").strip()
        if not title:
            raise ValidationError("Report title is required")
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Title cannot exceed {TITLE_MAX_LENGTH} characters")
        description = (description or "").strip()
        if len(description) > DESCRIPTION_MAX_LENGTH:
            raise ValidationError(f"Description cannot exceed {DESCRIPTION_MAX_LENGTH} characters")

        report = Report(
            id=uuid.uuid4().hex,
            category=category,
            title=title,
            description=description,
            location=location,
            reporter_id=actor.user_id,
        )
        async with self.db.transaction() as tx:
            await tx.insert_report(report)
        logger.info(f"Report {report.id} ({category}) submitted by {actor.user_id}")
        self.broker.publish(report_event(EventType.NEW_REPORT, report))
        return report

    async def get(self, report_id: str) -> Report:
        report = await self.db.get_report(report_id)
        if report is None:
            raise NotFound(f"Report {report_id} not found")
        return report

    async def moderate(self, report_id: str, action: str, actor: Actor, reason: Optional[str] = None) -> Report:
        """Administrative status change. Does not spawn alerts; votes drive escalation."""
        if not actor.is_admin:
            raise Forbidden("Only administrators can moderate reports")
        if action not in MODERATION_ACTIONS:
            raise ValidationError(f"Action must be one of: {', '.join(MODERATION_ACTIONS)}")
        status, verification = MODERATION_ACTIONS[action]

        async with self.locks.hold(report_id):
            report = await self.get(report_id)
            report.status = status
            if verification is not None:
                report.verification_status = verification
                report.verified_at = utcnow()
            report.updated_at = utcnow()
            try:
                async with self.db.transaction() as tx:
                    await tx.save_report(report)
            except ConcurrencyConflict:
                logger.warning(f"Moderation of report {report_id} lost a write race")
                raise

        logger.info(f"Report {report_id} {action} by {actor.user_id}" + (f": {reason}" if reason else ""))
        event_type = EventType.REPORT_VERIFIED if action == "approve" else EventType.REPORT_MODERATED
        self.broker.publish(report_event(event_type, report, action=action, moderatedBy=actor.user_id))
        return report
