"""RQ worker process entrypoint for generation and delivery jobs."""

import logging

from rq import SimpleWorker
from rq.worker_pool import WorkerPool

from config import settings
from services.job_queue import QUEUE_NAMES, get_redis_connection
from services.runtime import shutdown_runtime


class GenerationWorker(SimpleWorker):
    """Runs jobs in-process so the worker runtime (browser, bot, loop) survives between jobs."""

    def teardown(self):
        try:
            shutdown_runtime()
        finally:
            super().teardown()


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    redis_conn = get_redis_connection()
    pool = WorkerPool(
        list(QUEUE_NAMES),
        connection=redis_conn,
        num_workers=max(int(settings.WORKER_CONCURRENCY), 1),
        worker_class=GenerationWorker,
    )
    pool.start(logging_level=settings.LOG_LEVEL)


if __name__ == "__main__":
    main()
