"""Server-side expiration sweep job."""
from typing import Optional
import logging

from legalinsight.core.config import settings
from legalinsight.features.expiration.service import sweep_expired_plans

logger = logging.getLogger("legalinsight.workers.expiration")


def run_expiration_sweep(*, limit: Optional[int] = None, reschedule: bool = False) -> dict:
    """
    Sweep every plan past its expiry.

    With reschedule=True the next run is enqueued EXPIRATION_SWEEP_INTERVAL_SECONDS
    out, which keeps a periodic sweep going on an RQ worker started with
    --with-scheduler.
    """
    result = sweep_expired_plans(limit=limit)

    if reschedule:
        from legalinsight.queue_client import enqueue_expiration_sweep

        job_id = enqueue_expiration_sweep(settings.EXPIRATION_SWEEP_INTERVAL_SECONDS, reschedule=True)
        logger.info("[sweeper] next run scheduled", extra={"job_id": job_id})
        result["next_job_id"] = job_id
    return result


if __name__ == "__main__":
    result = run_expiration_sweep()
    print(result)
