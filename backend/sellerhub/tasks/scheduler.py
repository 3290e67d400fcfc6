"""Background scheduler task for subscription expiry and free-plan renewal"""
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from sellerhub.core.config import settings
from sellerhub.core.metrics import sweep_runs_counter
from sellerhub.db.redis import acquire_lock, release_lock
from sellerhub.db.session import SessionLocal
from sellerhub.models.subscription import Subscription
from sellerhub.services.subscription_service import renew_or_expire
from sellerhub.utils.dates import utcnow

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "lock:subscription_sweep"


def run_subscription_sweep(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Expire lapsed subscriptions and roll free plans forward.

    Each subscription is settled in its own transaction, so one failure does
    not block the rest of the sweep.
    """
    now = now or utcnow()
    due_ids = [
        row.id for row in db.query(Subscription.id).filter(
            Subscription.is_current.is_(True),
            Subscription.status == "active",
            Subscription.end_date <= now
        ).all()
    ]

    counts = {"renewed": 0, "expired": 0, "failed": 0}
    for subscription_id in due_ids:
        try:
            outcome = renew_or_expire(subscription_id, db, now=now)
        except Exception as e:
            db.rollback()
            counts["failed"] += 1
            logger.error(f"Failed to settle subscription {subscription_id}: {e}", exc_info=True)
            continue
        if outcome:
            counts[outcome] += 1

    if due_ids:
        logger.info(
            f"Subscription sweep: {counts['renewed']} renewed, {counts['expired']} expired, "
            f"{counts['failed']} failed"
        )
    return counts


async def subscription_sweep_task():
    """Background task that settles lapsed subscriptions on a fixed cadence"""
    logger.info("Starting subscription sweep task...")

    while True:
        try:
            await asyncio.sleep(settings.SUBSCRIPTION_SWEEP_INTERVAL)

            # Only one worker sweeps at a time
            if not acquire_lock(SWEEP_LOCK_KEY, timeout=settings.SUBSCRIPTION_SWEEP_LOCK_TIMEOUT):
                logger.debug("Subscription sweep already running on another worker, skipping")
                continue

            db = SessionLocal()
            try:
                run_subscription_sweep(db)
                sweep_runs_counter.labels(status="success").inc()
            except Exception as e:
                logger.error(f"Error in subscription sweep: {e}", exc_info=True)
                sweep_runs_counter.labels(status="failure").inc()
                db.rollback()
            finally:
                db.close()
                release_lock(SWEEP_LOCK_KEY)

        except asyncio.CancelledError:
            logger.info("Subscription sweep task cancelled")
            raise
        except Exception as e:
            logger.error(f"Fatal error in subscription sweep task: {e}", exc_info=True)
            await asyncio.sleep(settings.SUBSCRIPTION_SWEEP_INTERVAL)
