from dataclasses import dataclass

from .config import SUBSCRIBER_QUEUE_SIZE
from .locks import KeyedLock
from ..db.database import Database
from ..services.alert_lifecycle import AlertLifecycle
from ..services.broker import ProximityBroker
from ..services.escalation import EscalationEngine
from ..services.reports import ReportService
from ..services.vote_ledger import VoteLedger


@dataclass
class AppServices:
    """Holds the application's shared services; one instance per app, stored on `app.state`."""

    db: Database
    broker: ProximityBroker
    alerts: AlertLifecycle
    escalation: EscalationEngine
    votes: VoteLedger
    reports: ReportService


def build_services(db: Database, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> AppServices:
    """Wires the services around one database and one broker."""
    broker = ProximityBroker(queue_size=queue_size)
    report_locks = KeyedLock()
    alerts = AlertLifecycle(db, broker)
    escalation = EscalationEngine(alerts)
    return AppServices(
        db=db,
        broker=broker,
        alerts=alerts,
        escalation=escalation,
        votes=VoteLedger(db, broker, escalation, locks=report_locks),
        reports=ReportService(db, broker, locks=report_locks),
    )
