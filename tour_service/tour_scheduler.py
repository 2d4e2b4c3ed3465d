import asyncio
import logging
from sqlalchemy.orm import Session
from .database import SessionLocal
from .config import settings
from .service import SchedulingService

logger = logging.getLogger("tour_scheduler")


def expire_stale_requests(db: Session) -> int:
    """
    Cancels tour requests that were never confirmed before their start time,
    so they stop holding the agent's calendar.
    """
    service = SchedulingService(db)
    expired = service.expire_stale_requests()
    if expired:
        logger.info(f"Expired {expired} unconfirmed tour request(s).")
    else:
        logger.info("No expired tour requests.")
    return expired


async def run_tour_scheduler(poll_interval: int | None = None):
    """
    Main background loop for the scheduler.
    """
    poll_interval = poll_interval or settings.EXPIRY_POLL_INTERVAL_SECONDS
    while True:
        logger.info("Scheduler waking up to check for expired tour requests...")
        db: Session = SessionLocal()
        try:
            # Blocking database work stays off the event loop
            await asyncio.to_thread(expire_stale_requests, db)
        except Exception as e:
            logger.error(f"Error in tour scheduler loop: {e}")
            db.rollback()
        finally:
            db.close()

        # Wait for the next poll interval
        await asyncio.sleep(poll_interval)
