#!/usr/bin/env python3
"""Start ARQ worker for time-boxed attribution slices.

USAGE:
    python -m journeyx.workers.start_arq_worker

    Or directly:
    arq journeyx.workers.arq_worker.WorkerSettings
"""

import logging
import sys

from arq import run_worker

from journeyx.utils.env import load_env_file, require_env

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main():
    """Start the ARQ worker."""
    load_env_file()
    require_env("REDIS_URL")
    from journeyx.workers.arq_worker import WorkerSettings

    logger.info("Starting ARQ worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
