from __future__ import annotations

from redis import Redis
from rq import Queue, Worker

from mediastore.config import settings
from mediastore.logging_utils import configure_logging, get_logger


def main() -> None:
    configure_logging(settings.log_level)
    logger = get_logger(__name__)
    connection = Redis.from_url(settings.redis_url)
    logger.info(
        "ingest_worker.start queue=%s redis=%s backend=%s",
        settings.ingest_queue_name,
        settings.redis_url,
        settings.store_backend,
    )
    queue = Queue(settings.ingest_queue_name, connection=connection)
    worker = Worker([queue], connection=connection)
    worker.work()


if __name__ == "__main__":
    main()
