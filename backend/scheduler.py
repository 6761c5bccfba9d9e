import logging

from apscheduler.schedulers.background import BackgroundScheduler

import circulation
import config
from database import SessionLocal
from errors import LibraryError

logger = logging.getLogger(__name__)


def run_reservation_sweep():
    """Cancel notified reservations whose pickup window has passed and re-offer the copies."""
    logger.debug("Running reservation expiry sweep")
    db = SessionLocal()
    try:
        expired, promoted = circulation.expire_notified_reservations(db)
        if expired:
            logger.info("Sweep complete. Expired reservations: %s. Promoted: %s.", expired, promoted)
    except LibraryError as e:
        # Rolled back already; the next run will retry
        logger.error("Reservation sweep failed: %s", e.message)
    finally:
        db.close()


# Initialize Scheduler
scheduler = BackgroundScheduler()
scheduler.add_job(
    run_reservation_sweep,
    "interval",
    minutes=config.RESERVATION_SWEEP_MINUTES,
    id="reservation_sweep",
    replace_existing=True,
)
