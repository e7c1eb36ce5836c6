"""
Vote Ledger - one community vote per user per report.

Casting a vote and evaluating escalation happen inside one per-report
critical section: an in-process keyed lock, backed by an optimistic version
check on the stored report for writers in other processes. Two qualifying
votes racing on the same report therefore see the threshold crossed exactly
once, and exactly one alert is created.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from ..core.config import MAX_VOTE_RETRIES, VERIFICATION_RADIUS_METERS
from ..core.exceptions import ConcurrencyConflict, NotFound, NotVotable, OutOfRange
from ..core.locks import KeyedLock
from ..core.models import (
    Alert,
    GeoPoint,
    Report,
    Vote,
    VoteValue,
    canonical_user_id,
    utcnow,
)
from ..db.database import Database
from ..utils.geolocation import haversine_distance
from .broker import ProximityBroker
from .escalation import EscalationEngine
from .events import EventType, report_event

logger = logging.getLogger(__name__)


@dataclass
class VoteResult:
    report_id: str
    confirm_count: int
    deny_count: int
    escalated: bool
    verification_status: str
    user_vote: Optional[str] = None
    alert_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reportId": self.report_id,
            "confirmCount": self.confirm_count,
            "denyCount": self.deny_count,
            "escalated": self.escalated,
            "verificationStatus": self.verification_status,
            "userVote": self.user_vote,
            "alertId": self.alert_id,
        }


def apply_vote(report: Report, user_id: str, value: VoteValue, now: Optional[datetime] = None) -> bool:
    """
    Records `user_id`'s vote on `report`, keeping the tally in step with the vote map.

    A changed vote moves one count from the old bucket to the new one; a
    repeated vote only refreshes its timestamp. Returns True if the tally moved.
    """
    now = now or utcnow()
    existing = report.votes.get(user_id)
    if existing is None:
        report.votes[user_id] = Vote(user_id=user_id, vote=value, voted_at=now)
        report.tally.add(value)
        return True
    if existing.vote is value:
        existing.voted_at = now
        return False
    report.tally.remove(existing.vote)
    report.tally.add(value)
    existing.vote = value
    existing.voted_at = now
    return True


def remove_vote(report: Report, user_id: str) -> bool:
    existing = report.votes.pop(user_id, None)
    if existing is None:
        return False
    report.tally.remove(existing.vote)
    return True


class VoteLedger:
    def __init__(
        self,
        db: Database,
        broker: ProximityBroker,
        escalation: EscalationEngine,
        locks: Optional[KeyedLock] = None,
        verification_radius_meters: float = VERIFICATION_RADIUS_METERS,
        max_retries: int = MAX_VOTE_RETRIES,
    ):
        self.db = db
        self.broker = broker
        self.escalation = escalation
        self.locks = locks or KeyedLock()
        self.verification_radius_meters = verification_radius_meters
        self.max_retries = max_retries

    async def cast_vote(self, report_id: str, user_id: Any, vote: Any, voter_point: GeoPoint) -> VoteResult:
        """
        Casts or replaces `user_id`'s vote on a report.

        Raises OutOfRange if the voter is beyond the verification radius,
        NotVotable if the report is resolved or rejected, NotFound if the
        report does not exist.
        """
        user_id = canonical_user_id(user_id)
        value = VoteValue.parse(vote)

        def change(report: Report):
            distance = haversine_distance(voter_point, report.location)
            if distance > self.verification_radius_meters:
                raise OutOfRange(distance, self.verification_radius_meters)
            if report.status.is_terminal:
                raise NotVotable(f"Report {report.id} is {report.status.value} and no longer accepts votes")
            apply_vote(report, user_id, value)

        report, alert = await self._commit(report_id, change)
        logger.info(
            f"Vote {value.value} by {user_id} on report {report_id}: "
            f"{report.tally.confirm} confirm / {report.tally.deny} deny"
        )
        return self._result(report, user_id, alert)

    async def retract_vote(self, report_id: str, user_id: Any) -> VoteResult:
        """Withdraws a user's vote. Retracting when no vote exists changes nothing."""
        user_id = canonical_user_id(user_id)

        def change(report: Report):
            if report.status.is_terminal:
                raise NotVotable(f"Report {report.id} is {report.status.value} and no longer accepts votes")
            remove_vote(report, user_id)

        report, alert = await self._commit(report_id, change)
        logger.info(f"Vote by {user_id} retracted from report {report_id}")
        return self._result(report, user_id, alert)

    async def _commit(self, report_id: str, change: Callable[[Report], None]) -> Tuple[Report, Optional[Alert]]:
        async with self.locks.hold(report_id):
            for attempt in range(1, self.max_retries + 1):
                report = await self.db.get_report(report_id)
                if report is None:
                    raise NotFound(f"Report {report_id} not found")

                change(report)
                alert = self.escalation.evaluate(report)
                report.updated_at = utcnow()

                try:
                    async with self.db.transaction() as tx:
                        await tx.save_report(report)
                        if alert is not None:
                            await tx.insert_alert(alert)
                except ConcurrencyConflict as e:
                    logger.warning(f"Write conflict on report {report_id} (attempt {attempt}/{self.max_retries}): {e}")
                    continue
                break
            else:
                raise ConcurrencyConflict(f"Report {report_id} is too busy, please retry")

        if alert is not None:
            self.broker.publish(report_event(EventType.REPORT_VERIFIED, report, alertId=alert.id))
            self.escalation.lifecycle.announce(alert)
        return report, alert

    @staticmethod
    def _result(report: Report, user_id: str, alert: Optional[Alert]) -> VoteResult:
        own = report.votes.get(user_id)
        return VoteResult(
            report_id=report.id,
            confirm_count=report.tally.confirm,
            deny_count=report.tally.deny,
            escalated=alert is not None,
            verification_status=report.verification_status.value,
            user_vote=own.vote.value if own else None,
            alert_id=report.alert_id,
        )
