import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .config import ADMIN_ROLES, PRIVILEGED_ROLES
from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def canonical_user_id(user_id: Any) -> str:
    """
    Normalizes a user id to the single representation used as a vote key.

    Ids arrive as ints, strings or ObjectId-like objects depending on the
    caller; they are all compared as stripped strings.
    """
    if user_id is None:
        raise ValidationError("User id is required")
    value = str(user_id).strip()
    if not value:
        raise ValidationError("User id is required")
    return value


class ReportStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    FLAGGED = "flagged"

    @property
    def is_terminal(self) -> bool:
        return self in (ReportStatus.RESOLVED, ReportStatus.REJECTED)


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FALSE_REPORT = "false_report"


class VoteValue(str, Enum):
    CONFIRM = "confirm"
    DENY = "deny"

    @classmethod
    def parse(cls, value: Any) -> "VoteValue":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError('Vote must be "confirm" or "deny"') from None


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Invalid severity: {value!r}") from None


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not AlertStatus.ACTIVE


class AlertSourceType(str, Enum):
    REPORT = "report"
    MANUAL = "manual"


REPORT_CATEGORIES = frozenset({
    "emergency",
    "crime",
    "accident",
    "fire",
    "medical",
    "natural_disaster",
    "infrastructure",
    "suspicious_activity",
    "traffic",
    "weather",
    "public_safety",
    "other",
})


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    @classmethod
    def parse(cls, lat: Any, lng: Any) -> "GeoPoint":
        """Builds a point from untrusted input, rejecting non-finite or out-of-range values."""
        try:
            lat_f = float(lat)
            lng_f = float(lng)
        except (TypeError, ValueError):
            raise ValidationError("Latitude and longitude must be numbers") from None
        if not (math.isfinite(lat_f) and math.isfinite(lng_f)):
            raise ValidationError("Latitude and longitude must be finite")
        if not -90.0 <= lat_f <= 90.0:
            raise ValidationError(f"Latitude out of range: {lat_f}")
        if not -180.0 <= lng_f <= 180.0:
            raise ValidationError(f"Longitude out of range: {lng_f}")
        return cls(lat_f, lng_f)

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass
class Actor:
    """The already-authenticated caller, as supplied by the identity gateway."""

    user_id: str
    role: str = "user"

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


SYSTEM_ACTOR = Actor(user_id="system", role="system")


@dataclass
class Vote:
    user_id: str
    vote: VoteValue
    voted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"userId": self.user_id, "vote": self.vote.value, "votedAt": _iso(self.voted_at)}


@dataclass
class VoteTally:
    confirm: int = 0
    deny: int = 0

    @classmethod
    def from_votes(cls, votes) -> "VoteTally":
        tally = cls()
        for vote in votes:
            tally.add(vote.vote)
        return tally

    def add(self, value: VoteValue):
        if value is VoteValue.CONFIRM:
            self.confirm += 1
        else:
            self.deny += 1

    def remove(self, value: VoteValue):
        if value is VoteValue.CONFIRM:
            self.confirm -= 1
        else:
            self.deny -= 1

    @property
    def total(self) -> int:
        return self.confirm + self.deny


@dataclass
class Report:
    id: str
    category: str
    location: GeoPoint
    title: str = ""
    description: str = ""
    reporter_id: Optional[str] = None
    status: ReportStatus = ReportStatus.PENDING
    verification_status: VerificationStatus = VerificationStatus.UNVERIFIED
    tally: VoteTally = field(default_factory=VoteTally)
    # canonical user id -> vote
    votes: Dict[str, Vote] = field(default_factory=dict)
    alert_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_escalation_candidate(self) -> bool:
        return (
            self.status is ReportStatus.PENDING
            and self.verification_status is VerificationStatus.UNVERIFIED
        )

    def to_dict(self, include_votes: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "location": self.location.to_dict(),
            "status": self.status.value,
            "verificationStatus": self.verification_status.value,
            "votes": {"confirm": self.tally.confirm, "deny": self.tally.deny},
            "alertId": self.alert_id,
            "createdAt": _iso(self.created_at),
            "verifiedAt": _iso(self.verified_at),
        }
        if include_votes:
            data["voters"] = [v.to_dict() for v in self.votes.values()]
        return data


@dataclass
class AlertSource:
    type: AlertSourceType
    report_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "reportId": self.report_id}


@dataclass
class Alert:
    id: str
    title: str
    description: str
    severity: Severity
    center: GeoPoint
    radius_meters: float
    type: str = "community"
    status: AlertStatus = AlertStatus.ACTIVE
    source: Optional[AlertSource] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    effective_until: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    status_changed_by: Optional[str] = None
    status_reason: Optional[str] = None

    def is_overdue(self, now: datetime) -> bool:
        return self.effective_until is not None and now > self.effective_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "severity": self.severity.value,
            "status": self.status.value,
            "targetArea": {
                "center": self.center.to_dict(),
                "radius": self.radius_meters,
            },
            "source": self.source.to_dict() if self.source else None,
            "metadata": dict(self.metadata),
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "effectiveUntil": _iso(self.effective_until),
            "statusChangedAt": _iso(self.status_changed_at),
            "statusChangedBy": self.status_changed_by,
            "statusReason": self.status_reason,
        }
