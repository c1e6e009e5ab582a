"""RQ worker process entrypoint for reanalysis jobs."""

import logging

from rq import Worker

from config import validate_reanalysis_settings
from services.reanalysis_queue import REANALYSIS_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    validate_reanalysis_settings()
    redis_conn = get_redis_connection()
    worker = Worker([REANALYSIS_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
