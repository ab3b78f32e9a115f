"""
Scheduler for the opportunistic credit expiry sweep.
Runs every CREDIT_EXPIRY_SWEEP_MINUTES minutes.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django_apscheduler.jobstores import DjangoJobStore

logger = logging.getLogger(__name__)


def expire_stale_credits_job():
    """
    Flip confirmed credits past their window to EXPIRED
    """
    from apps.payments.services import CreditLedger

    try:
        count = CreditLedger.expire_stale_credits()
        if count:
            logger.info(f"Expired {count} stale payment credits")
        return count
    except Exception as e:
        logger.error(f"Error in credit expiry sweep: {str(e)}")
        return 0


def start_scheduler():
    scheduler = BackgroundScheduler(timezone=settings.TIME_ZONE)
    scheduler.add_jobstore(DjangoJobStore(), "default")

    scheduler.add_job(
        expire_stale_credits_job,
        trigger=IntervalTrigger(minutes=settings.CREDIT_EXPIRY_SWEEP_MINUTES),
        id='expire_stale_credits_job',
        name='Expire stale payment credits',
        max_instances=1,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Credit expiry scheduler started. Sweeping every "
        f"{settings.CREDIT_EXPIRY_SWEEP_MINUTES} minutes."
    )
    return scheduler
