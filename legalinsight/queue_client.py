# legalinsight/queue_client.py
"""
RQ queue client.

Enqueues the expiration sweep onto the Redis-backed default queue so it runs
server-side on a worker instead of being triggered by polling clients.
"""
from datetime import timedelta

from redis import Redis
from rq import Queue

from legalinsight.core.config import settings

# Initialize Redis and queue
redis_conn = Redis.from_url(settings.REDIS_URL)
queue = Queue(connection=redis_conn)

SWEEP_JOB_PATH = "legalinsight.workers.expiration_sweeper.run_expiration_sweep"


def enqueue_expiration_sweep(delay_seconds: int = 0, reschedule: bool = False) -> str:
    """
    Enqueue an expiration sweep.

    Args:
        delay_seconds: Delay before the sweep runs (0 = as soon as a worker is free)
        reschedule: Whether the job should enqueue its own next run

    Returns:
        Job ID
    """
    kwargs = {"reschedule": reschedule}
    if delay_seconds > 0:
        job = queue.enqueue_in(
            timedelta(seconds=delay_seconds),
            SWEEP_JOB_PATH,
            kwargs=kwargs,
            job_timeout="10m",
            result_ttl=3600,  # Keep result for 1 hour
        )
    else:
        job = queue.enqueue(
            SWEEP_JOB_PATH,
            kwargs=kwargs,
            job_timeout="10m",
            result_ttl=3600,
        )
    return job.id


if __name__ == "__main__":
    job_id = enqueue_expiration_sweep(reschedule=True)
    print(f"Enqueued job: {job_id}")
