import os

from dotenv import load_dotenv

# Load environment variables from .env file before reading any setting
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Runtime settings ---
DATABASE_PATH = os.getenv("DATABASE_PATH", "data/quickalert.db")
API_KEY = os.getenv("API_KEY")
EXPIRY_SWEEP_INTERVAL_SECONDS = float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "60"))
STREAM_KEEPALIVE_SECONDS = float(os.getenv("STREAM_KEEPALIVE_SECONDS", "15"))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))
RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)
RATE_LIMIT_VOTES = os.getenv("RATE_LIMIT_VOTES", "30/minute")
RATE_LIMIT_ALERTS = os.getenv("RATE_LIMIT_ALERTS", "10/minute")

# --- Geometry ---
EARTH_RADIUS_METERS = 6_371_000.0

# Maximum voter-to-report distance for casting a vote
VERIFICATION_RADIUS_METERS = 2_000.0
# Effect radius used when publishing report events
REPORT_NOTIFY_RADIUS_METERS = 10_000.0
# Radius of manually issued alerts when the caller gives none
DEFAULT_ALERT_RADIUS_METERS = 10_000.0
# Radius of alerts spawned by community escalation
COMMUNITY_ALERT_RADIUS_METERS = 5_000.0
MIN_ALERT_RADIUS_METERS = 100.0
MAX_ALERT_RADIUS_METERS = 50_000.0

# --- Voting & escalation ---
ESCALATION_CONFIRM_THRESHOLD = 4
FALSE_REPORT_DENY_THRESHOLD = 3
COMMUNITY_ALERT_TTL_HOURS = 24
MAX_VOTE_RETRIES = 3

# --- Roles ---
PRIVILEGED_ROLES = frozenset({"responder", "admin", "super_admin"})
ADMIN_ROLES = frozenset({"admin", "super_admin"})
