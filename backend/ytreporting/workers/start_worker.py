#!/usr/bin/env python3
"""Start the ARQ ingestion worker.

USAGE:
    python -m ytreporting.workers.start_worker
    python -m ytreporting.workers.start_worker --burst   # drain queue and exit

    Or directly:
    arq ytreporting.workers.arq_worker.WorkerSettings
"""

import argparse
import logging
import sys

logger = logging.getLogger(__name__)


def main(argv=None):
    """Configure logging and run the worker until interrupted."""
    parser = argparse.ArgumentParser(description="YouTube report ingestion worker")
    parser.add_argument("--burst", action="store_true", help="Process queued jobs, then exit")
    parser.add_argument("--log-level", default="INFO", help="Root log level (default: INFO)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    from arq import run_worker
    from ytreporting.workers.arq_worker import WorkerSettings

    logger.info("Starting ingestion worker (burst=%s)...", args.burst)
    run_worker(WorkerSettings, burst=args.burst)


if __name__ == "__main__":
    main()
