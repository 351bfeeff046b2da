"""RQ worker entry point for quiz generation jobs.

Usage:
    python worker.py [--burst]

Jobs need the document source, quiz store and billing ledger of the host
application. Point COLLABORATORS_FACTORY at a ``"package.module:callable"``
returning ``src.workers.generation_worker.Collaborators``; it is loaded once
at startup.
"""

import argparse
import logging
import sys

import redis
import sentry_sdk
from rq import Worker
from sentry_sdk.integrations.rq import RqIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from src.core.config import settings
from src.workers.generation_worker import configure_from_factory

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    """Initialize Sentry for error tracking (if DSN is configured)."""
    if not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        integrations=[
            RqIntegration(),
            SqlalchemyIntegration(),
        ],
        release=f"{settings.app_name}@0.1.0",
    )
    logger.info("Sentry initialized")


def main():
    """Start the RQ worker."""
    parser = argparse.ArgumentParser(description="Start RQ worker for quiz generation")
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Run in burst mode (process all jobs then exit)"
    )
    parser.add_argument(
        "--queue",
        type=str,
        default=settings.queue_name,
        help=f"Queue name to listen to (default: {settings.queue_name})"
    )
    args = parser.parse_args()

    init_sentry()

    try:
        if settings.collaborators_factory:
            configure_from_factory(settings.collaborators_factory)
        else:
            logger.warning("COLLABORATORS_FACTORY is not set; jobs will fail until collaborators are configured")

        redis_conn = redis.from_url(settings.redis_url, decode_responses=False)

        logger.info(f"Worker listening on queue: {args.queue} (burst={args.burst})")

        worker = Worker(queues=[args.queue], connection=redis_conn)
        worker.work(burst=args.burst)

    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
