from celery import shared_task
import logging

from .services import purge_stale_checkouts

logger = logging.getLogger(__name__)


@shared_task
def purge_stale_checkouts_task(retention_hours=24):
    """
    Expires abandoned pending checkouts and removes finished ones past the
    retention window. Scheduled hourly by celery beat.
    """
    expired, deleted = purge_stale_checkouts(retention_hours=retention_hours)
    return {'expired': expired, 'deleted': deleted}
