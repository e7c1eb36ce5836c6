import asyncio
import logging

from ..core.config import EXPIRY_SWEEP_INTERVAL_SECONDS
from .alert_lifecycle import AlertLifecycle

logger = logging.getLogger(__name__)


async def sweep_expired_alerts(
    lifecycle: AlertLifecycle,
    interval_seconds: float = EXPIRY_SWEEP_INTERVAL_SECONDS,
):
    """
    Periodically expires active alerts whose effective window has closed.

    Runs until cancelled; an error in one pass is logged and the next pass
    still happens.
    """
    logger.info(f"Alert expiry sweep started (every {interval_seconds:.0f}s)")
    while True:
        try:
            expired = await lifecycle.expire_due()
            if expired:
                logger.info(f"Expiry sweep: expired {len(expired)} alert(s): {[a.id for a in expired]}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"An unexpected error occurred in expiry sweep: {e}", exc_info=True)

        await asyncio.sleep(interval_seconds)
