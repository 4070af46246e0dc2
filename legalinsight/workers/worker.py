# Run this with: rq worker --with-scheduler -u redis://localhost:6379 default
# or: python -m legalinsight.workers.worker (spins a small worker loop for dev)
import logging

from redis import Redis
from rq import Queue, Worker

from legalinsight.core.config import settings
from legalinsight.core.database import init_engine
from legalinsight.core.logging import configure_logging

configure_logging(settings.ENV)
logger = logging.getLogger("legalinsight")

listen = ['default']

conn = Redis.from_url(settings.REDIS_URL)

if __name__ == '__main__':
    init_engine()
    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    logger.info("Starting RQ worker (interactive).")
    worker.work(with_scheduler=True)
