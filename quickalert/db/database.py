import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from ..core.config import DATABASE_PATH
from ..core.exceptions import ConcurrencyConflict
from ..core.models import (
    Alert,
    AlertSource,
    AlertSourceType,
    AlertStatus,
    GeoPoint,
    Report,
    ReportStatus,
    Severity,
    VerificationStatus,
    Vote,
    VoteTally,
    VoteValue,
)

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS reports (
        id TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        title TEXT,
        description TEXT,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        reporter_id TEXT,
        status TEXT NOT NULL,
        verification_status TEXT NOT NULL,
        confirm_count INTEGER NOT NULL DEFAULT 0,
        deny_count INTEGER NOT NULL DEFAULT 0,
        alert_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        verified_at TEXT,
        version INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS report_votes (
        report_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        vote TEXT NOT NULL,
        voted_at TEXT NOT NULL,
        PRIMARY KEY (report_id, user_id)
    );
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        type TEXT,
        severity TEXT NOT NULL,
        lat REAL NOT NULL,
        lng REAL NOT NULL,
        radius_meters REAL NOT NULL,
        status TEXT NOT NULL,
        source_type TEXT,
        source_report_id TEXT,
        metadata_json TEXT,
        created_by TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        effective_until TEXT,
        status_changed_at TEXT,
        status_changed_by TEXT,
        status_reason TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_reports_status ON reports(status);
    CREATE INDEX IF NOT EXISTS idx_alerts_status_lat ON alerts(status, lat);
    CREATE INDEX IF NOT EXISTS idx_alerts_effective_until ON alerts(effective_until);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_source_report
        ON alerts(source_report_id) WHERE source_report_id IS NOT NULL;
"""

_ALERT_COLUMNS = (
    "id, title, description, type, severity, lat, lng, radius_meters, status, source_type, "
    "source_report_id, metadata_json, created_by, created_at, updated_at, effective_until, "
    "status_changed_at, status_changed_by, status_reason"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Stores every timestamp as UTC ISO-8601 so string comparison follows time order."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _alert_row(alert: Alert) -> tuple:
    return (
        alert.id,
        alert.title,
        alert.description,
        alert.type,
        alert.severity.value,
        alert.center.lat,
        alert.center.lng,
        alert.radius_meters,
        alert.status.value,
        alert.source.type.value if alert.source else None,
        alert.source.report_id if alert.source else None,
        json.dumps(alert.metadata, ensure_ascii=False),
        alert.created_by,
        _ts(alert.created_at),
        _ts(alert.updated_at),
        _ts(alert.effective_until),
        _ts(alert.status_changed_at),
        alert.status_changed_by,
        alert.status_reason,
    )


def _alert_from_row(r) -> Alert:
    source = None
    if r["source_type"]:
        source = AlertSource(type=AlertSourceType(r["source_type"]), report_id=r["source_report_id"])
    metadata: Dict[str, Any] = {}
    if r["metadata_json"]:
        try:
            metadata = json.loads(r["metadata_json"])
        except json.JSONDecodeError:
            logger.error(f"Corrupt metadata on alert {r['id']}, ignoring it")
    return Alert(
        id=r["id"],
        title=r["title"],
        description=r["description"] or "",
        type=r["type"] or "community",
        severity=Severity(r["severity"]),
        center=GeoPoint(r["lat"], r["lng"]),
        radius_meters=r["radius_meters"],
        status=AlertStatus(r["status"]),
        source=source,
        metadata=metadata,
        created_by=r["created_by"],
        created_at=_parse_ts(r["created_at"]),
        updated_at=_parse_ts(r["updated_at"]),
        effective_until=_parse_ts(r["effective_until"]),
        status_changed_at=_parse_ts(r["status_changed_at"]),
        status_changed_by=r["status_changed_by"],
        status_reason=r["status_reason"],
    )


class Writer:
    """Statement set available inside `Database.transaction()`."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def insert_report(self, report: Report):
        await self._conn.execute(
            "INSERT INTO reports (id, category, title, description, lat, lng, reporter_id, status, "
            "verification_status, confirm_count, deny_count, alert_id, created_at, updated_at, "
            "verified_at, version) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                report.id,
                report.category,
                report.title,
                report.description,
                report.location.lat,
                report.location.lng,
                report.reporter_id,
                report.status.value,
                report.verification_status.value,
                report.tally.confirm,
                report.tally.deny,
                report.alert_id,
                _ts(report.created_at),
                _ts(report.updated_at),
                _ts(report.verified_at),
                report.version,
            ),
        )
        await self._write_votes(report)

    async def save_report(self, report: Report):
        """
        Writes the report and its full vote set if the stored version still matches.

        Raises ConcurrencyConflict when another writer got there first; on
        success `report.version` is bumped to the stored value.
        """
        cursor = await self._conn.execute(
            "UPDATE reports SET status = ?, verification_status = ?, confirm_count = ?, "
            "deny_count = ?, alert_id = ?, updated_at = ?, verified_at = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (
                report.status.value,
                report.verification_status.value,
                report.tally.confirm,
                report.tally.deny,
                report.alert_id,
                _ts(report.updated_at),
                _ts(report.verified_at),
                report.id,
                report.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(f"Report {report.id} was modified concurrently")
        await self._conn.execute("DELETE FROM report_votes WHERE report_id = ?", (report.id,))
        await self._write_votes(report)
        report.version += 1

    async def _write_votes(self, report: Report):
        if not report.votes:
            return
        await self._conn.executemany(
            "INSERT INTO report_votes (report_id, user_id, vote, voted_at) VALUES (?, ?, ?, ?)",
            [(report.id, v.user_id, v.vote.value, _ts(v.voted_at)) for v in report.votes.values()],
        )

    async def insert_alert(self, alert: Alert):
        try:
            await self._conn.execute(
                f"INSERT INTO alerts ({_ALERT_COLUMNS}) VALUES ({', '.join('?' * 19)})",
                _alert_row(alert),
            )
        except aiosqlite.IntegrityError as e:
            if alert.source and alert.source.report_id:
                raise ConcurrencyConflict(
                    f"An alert already exists for report {alert.source.report_id}"
                ) from e
            raise

    async def update_alert(self, alert: Alert):
        await self._conn.execute(
            "UPDATE alerts SET title = ?, description = ?, type = ?, severity = ?, lat = ?, lng = ?, "
            "radius_meters = ?, status = ?, metadata_json = ?, updated_at = ?, effective_until = ?, "
            "status_changed_at = ?, status_changed_by = ?, status_reason = ? WHERE id = ?",
            (
                alert.title,
                alert.description,
                alert.type,
                alert.severity.value,
                alert.center.lat,
                alert.center.lng,
                alert.radius_meters,
                alert.status.value,
                json.dumps(alert.metadata, ensure_ascii=False),
                _ts(alert.updated_at),
                _ts(alert.effective_until),
                _ts(alert.status_changed_at),
                alert.status_changed_by,
                alert.status_reason,
                alert.id,
            ),
        )


class Database:
    """
    aiosqlite-backed store for reports, votes and alerts.

    A single connection is shared by the whole app; `_lock` keeps statement
    groups from interleaving so a transaction never sees another task's writes.
    """

    def __init__(self, path: str = DATABASE_PATH):
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self):
        """Open the connection and create tables."""
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        # Autocommit mode; transactions are opened explicitly
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA)
        logger.info(f"Database initialized at {self.path}")

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized")
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        """Runs the block in one IMMEDIATE transaction; any exception rolls everything back."""
        async with self._lock:
            conn = self.connection
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield Writer(conn)
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def get_report(self, report_id: str) -> Optional[Report]:
        async with self._lock:
            cursor = await self.connection.execute("SELECT * FROM reports WHERE id = ?", (report_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await self.connection.execute(
                "SELECT user_id, vote, voted_at FROM report_votes WHERE report_id = ? ORDER BY voted_at",
                (report_id,),
            )
            vote_rows = await cursor.fetchall()

        votes = {
            v["user_id"]: Vote(user_id=v["user_id"], vote=VoteValue(v["vote"]), voted_at=_parse_ts(v["voted_at"]))
            for v in vote_rows
        }
        tally = VoteTally.from_votes(votes.values())
        if (tally.confirm, tally.deny) != (row["confirm_count"], row["deny_count"]):
            logger.warning(
                f"Stored tally for report {report_id} ({row['confirm_count']}/{row['deny_count']}) "
                f"disagrees with its votes ({tally.confirm}/{tally.deny}); using the votes"
            )
        return Report(
            id=row["id"],
            category=row["category"],
            title=row["title"] or "",
            description=row["description"] or "",
            location=GeoPoint(row["lat"], row["lng"]),
            reporter_id=row["reporter_id"],
            status=ReportStatus(row["status"]),
            verification_status=VerificationStatus(row["verification_status"]),
            tally=tally,
            votes=votes,
            alert_id=row["alert_id"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            verified_at=_parse_ts(row["verified_at"]),
            version=row["version"],
        )

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._lock:
            cursor = await self.connection.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE id = ?", (alert_id,)
            )
            row = await cursor.fetchone()
        return _alert_from_row(row) if row else None

    async def get_alert_for_report(self, report_id: str) -> Optional[Alert]:
        async with self._lock:
            cursor = await self.connection.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE source_report_id = ?", (report_id,)
            )
            row = await cursor.fetchone()
        return _alert_from_row(row) if row else None

    async def list_active_alerts_in_band(self, min_lat: float, max_lat: float) -> List[Alert]:
        """Every active alert whose center latitude lies in [min_lat, max_lat], unpaged."""
        async with self._lock:
            cursor = await self.connection.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts WHERE status = ? AND lat BETWEEN ? AND ?",
                (AlertStatus.ACTIVE.value, min_lat, max_lat),
            )
            rows = await cursor.fetchall()
        return [_alert_from_row(r) for r in rows]

    async def list_overdue_alerts(self, now: datetime) -> List[Alert]:
        """Active alerts whose effective window closed before `now`."""
        async with self._lock:
            cursor = await self.connection.execute(
                f"SELECT {_ALERT_COLUMNS} FROM alerts "
                "WHERE status = ? AND effective_until IS NOT NULL AND effective_until < ?",
                (AlertStatus.ACTIVE.value, _ts(now)),
            )
            rows = await cursor.fetchall()
        return [_alert_from_row(r) for r in rows]

    async def count_alerts(self) -> int:
        async with self._lock:
            cursor = await self.connection.execute("SELECT COUNT(*) AS c FROM alerts")
            row = await cursor.fetchone()
        return row["c"]
