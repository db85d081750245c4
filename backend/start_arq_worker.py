#!/usr/bin/env python3
"""
ARQ Worker Startup Script
Run this to start the pipeline worker and its cron schedules
"""
import logging
from arq import run_worker
from core.arq_worker import WorkerSettings
from core.config import settings
from core.utils.logging import setup_logging

setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker"""
    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
