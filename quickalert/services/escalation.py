"""
Escalation Engine - promotes a community-confirmed report into an alert.

The engine only decides and builds; the caller (VoteLedger) owns the
per-report critical section and writes the report and the alert together.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from ..core.config import (
    COMMUNITY_ALERT_RADIUS_METERS,
    COMMUNITY_ALERT_TTL_HOURS,
    ESCALATION_CONFIRM_THRESHOLD,
    FALSE_REPORT_DENY_THRESHOLD,
)
from ..core.models import (
    Actor,
    Alert,
    AlertSource,
    AlertSourceType,
    Report,
    ReportStatus,
    Severity,
    SYSTEM_ACTOR,
    VerificationStatus,
    utcnow,
)
from .alert_lifecycle import DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH, AlertInput, AlertLifecycle

logger = logging.getLogger(__name__)

# Severity of a community alert by report category; anything unlisted is medium
CATEGORY_SEVERITY = {
    "fire": Severity.HIGH,
    "natural_disaster": Severity.HIGH,
    "emergency": Severity.HIGH,
    "medical": Severity.MEDIUM,
    "accident": Severity.MEDIUM,
    "crime": Severity.MEDIUM,
    "infrastructure": Severity.LOW,
    "other": Severity.LOW,
}

# Alert type shown to clients, by report category
CATEGORY_ALERT_TYPE = {
    "accident": "traffic",
    "traffic": "traffic",
    "fire": "emergency",
    "emergency": "emergency",
    "natural_disaster": "emergency",
    "weather": "weather",
    "crime": "crime",
    "suspicious_activity": "crime",
    "medical": "health",
    "infrastructure": "infrastructure",
    "public_safety": "community",
    "other": "community",
}


def severity_for_category(category: str) -> Severity:
    return CATEGORY_SEVERITY.get(category, Severity.MEDIUM)


class EscalationEngine:
    """
    Rule: a report escalates when it reaches the confirm threshold while still
    pending and unverified. Re-evaluating a verified or escalated report is a
    no-op, so at most one alert is ever built per report.
    """

    def __init__(
        self,
        lifecycle: AlertLifecycle,
        confirm_threshold: int = ESCALATION_CONFIRM_THRESHOLD,
        deny_threshold: int = FALSE_REPORT_DENY_THRESHOLD,
    ):
        self.lifecycle = lifecycle
        self.confirm_threshold = confirm_threshold
        self.deny_threshold = deny_threshold

    def should_escalate(self, report: Report) -> bool:
        return report.is_escalation_candidate and report.tally.confirm >= self.confirm_threshold

    def evaluate(self, report: Report, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Applies the escalation rule to `report` in place.

        Returns the newly built alert when the report escalates, else None.
        Also marks a report as a false report once denies reach the deny
        threshold first; such a report can no longer escalate.
        """
        now = now or utcnow()

        if self.should_escalate(report):
            alert = self._build_alert(report, now)
            report.status = ReportStatus.VERIFIED
            report.verification_status = VerificationStatus.VERIFIED
            report.verified_at = now
            report.alert_id = alert.id
            logger.info(
                f"Report {report.id} verified by {report.tally.confirm} confirmations; alert {alert.id} spawned"
            )
            return alert

        if (
            report.verification_status is VerificationStatus.UNVERIFIED
            and report.status is ReportStatus.PENDING
            and report.tally.deny >= self.deny_threshold
        ):
            report.verification_status = VerificationStatus.FALSE_REPORT
            logger.info(f"Report {report.id} marked as false report after {report.tally.deny} denials")

        return None

    def _build_alert(self, report: Report, now: datetime) -> Alert:
        label = report.title or f"{report.category.replace('_', ' ').title()} incident"
        notice = (
            f"\n\nAutomatically issued after {report.tally.confirm} community members "
            f"confirmed this report."
        )
        # Reports allow longer descriptions than alerts; the notice must survive the cut
        body = (report.description or "Community reported incident")[: DESCRIPTION_MAX_LENGTH - len(notice)]
        data = AlertInput(
            title=f"Community verified: {label}"[:TITLE_MAX_LENGTH],
            description=body.strip() + notice,
            lat=report.location.lat,
            lng=report.location.lng,
            severity=severity_for_category(report.category),
            radius_meters=COMMUNITY_ALERT_RADIUS_METERS,
            type=CATEGORY_ALERT_TYPE.get(report.category, "community"),
            effective_until=now + timedelta(hours=COMMUNITY_ALERT_TTL_HOURS),
            metadata={
                "communityVerified": True,
                "verificationCount": report.tally.confirm,
                "reportId": report.id,
            },
        )
        actor = Actor(user_id=report.reporter_id) if report.reporter_id else SYSTEM_ACTOR
        return self.lifecycle.new_alert(
            data,
            actor,
            source=AlertSource(type=AlertSourceType.REPORT, report_id=report.id),
            now=now,
        )
