import logging

from celery import shared_task

from services import retention, status

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def promote_overdue_bookings() -> dict:
    return status.promote_overdue_bookings()


@shared_task(ignore_result=True)
def run_retention_sweep() -> dict:
    summary = retention.run_retention_sweep()
    if summary["failures"]:
        logger.warning("Retention sweep left %d row(s) for the next run", summary["failures"])
    return summary
