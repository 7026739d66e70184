import asyncio
import logging
import sys
import time

from celery.signals import worker_process_init

from leadflow.celery_config import celery_app
from leadflow.db.init import init_db
from leadflow import scheduler  # noqa: F401  registers the periodic tasks

# Entry point for the Celery worker: `celery -A leadflow.celery_worker.celery worker`.
# Tasks are discovered through the `include` list in celery_config.

logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Check the database is reachable when a worker process starts.
    Each task still calls init_db() inside its own event loop.
    """
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        logger.info("Database connection initialized for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        time.sleep(5)
        try:
            asyncio.run(init_db())
            logger.info("Database connection initialized for Celery worker (retry successful).")
        except Exception as retry_error:
            logger.error(f"Failed to initialize database for Celery worker (retry failed): {retry_error}", exc_info=True)
            sys.exit(1)


celery = celery_app
