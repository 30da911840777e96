import logging

from celery import current_app

from core.config import settings
from core.db import db_session
from services.orders import cancel_abandoned_orders

logger = logging.getLogger(__name__)


@current_app.task(bind=True, max_retries=3)
def cancel_abandoned_orders_task(self, max_age_minutes: int | None = None):
    """
    Cancel online-payment orders that were never paid.
    Runs on the beat schedule; retries on database errors.
    """
    max_age = max_age_minutes or settings.ABANDONED_ORDER_MAX_AGE_MINUTES
    try:
        with db_session() as db:
            cleaned = cancel_abandoned_orders(db, max_age)
    except Exception as exc:
        logger.exception("Abandoned order sweep failed")
        countdown = min(2 ** self.request.retries, 60)
        raise self.retry(exc=exc, countdown=countdown)

    if cleaned:
        logger.info("Cleaned up %s abandoned orders", cleaned)
    return {"status": "ok", "cancelled": cleaned}
