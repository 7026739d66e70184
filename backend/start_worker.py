#!/usr/bin/env python3
"""
Starts a Celery worker (with the beat scheduler for delayed-action recovery)
if none is running.
"""

import asyncio
import logging
import os
import subprocess
import sys
import time

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from leadflow.celery_config import celery_app  # noqa: E402
from leadflow.config import config  # noqa: E402
from leadflow.db.init import init_db  # noqa: E402

logger = logging.getLogger(__name__)


def check_celery_worker():
    """Check if a Celery worker is running"""
    try:
        active_workers = celery_app.control.inspect().active()
        if active_workers:
            logger.info(f"Celery workers running: {list(active_workers)}")
            return True
        logger.warning("No active Celery workers found")
        return False
    except Exception as e:
        logger.error(f"Failed to check Celery worker status: {e}")
        return False


def start_celery_worker():
    """Start the Celery worker with an embedded beat"""
    try:
        logger.info("Starting Celery worker...")

        asyncio.run(init_db())
        logger.info("Database connection initialized")

        cmd = [
            "celery",
            "-A", "leadflow.celery_worker.celery",
            "worker",
            "--beat",
            f"--loglevel={config.LOG_LEVEL.lower()}",
            "--concurrency=1",
        ]

        logger.info(f"Running command: {' '.join(cmd)}")
        process = subprocess.Popen(cmd, cwd=os.path.dirname(os.path.abspath(__file__)))

        logger.info(f"Celery worker started with PID: {process.pid}")
        return process

    except Exception as e:
        logger.error(f"Failed to start Celery worker: {e}")
        return None


def main():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("=== CELERY WORKER CHECK ===")

    if check_celery_worker():
        logger.info("Worker is already running, no action needed")
        return

    process = start_celery_worker()
    if not process:
        logger.error("Failed to start worker")
        sys.exit(1)

    logger.info("Worker started successfully; press Ctrl+C to stop it")
    try:
        while True:
            time.sleep(1)
            if process.poll() is not None:
                logger.error("Worker process died unexpectedly")
                break
    except KeyboardInterrupt:
        logger.info("Stopping worker...")
        process.terminate()
        process.wait()
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
