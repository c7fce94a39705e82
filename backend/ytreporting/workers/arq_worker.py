"""ARQ async worker for YouTube report ingestion.

WHAT:
    Single async worker that runs the two cron triggers (hourly ingestion
    sweep, daily metadata refresh) and processes manually enqueued
    ingestion jobs.

WHY:
    - ARQ provides async job processing with built-in cron scheduling
    - The ingestion pipeline is synchronous; it runs in a thread via
      asyncio.to_thread so the event loop stays responsive
    - Clean separation: worker handles orchestration, services handle logic

USAGE:
    # Start worker
    arq ytreporting.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m ytreporting.workers.start_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - ytreporting/services/ingestion_scheduler.py
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict

from arq import cron

from ytreporting.services.ingestion_scheduler import (
    ingest_job_now,
    run_ingestion_sweep,
    run_metadata_refresh,
)
from ytreporting.services.report_ingestion_service import ReportIngestionError
from ytreporting.telemetry import capture_exception, init_sentry
from ytreporting.workers.arq_enqueue import QUEUE_NAME, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def scheduled_ingestion_sweep(ctx: Dict) -> Dict:
    """Scheduled job: ingest new report files for all active jobs.

    WHEN:
        Every hour at :00.
    """
    logger.info("[ARQ] Starting scheduled ingestion sweep")
    summary = await asyncio.to_thread(run_ingestion_sweep)
    logger.info("[ARQ] Ingestion sweep finished: %s", summary)
    return summary


async def scheduled_metadata_refresh(ctx: Dict) -> Dict:
    """Scheduled job: refresh job metadata older than 30 days.

    WHEN:
        Daily at 00:00 UTC.
    """
    logger.info("[ARQ] Starting scheduled metadata refresh")
    summary = await asyncio.to_thread(run_metadata_refresh)
    logger.info("[ARQ] Metadata refresh finished: %s", summary)
    return summary


# =============================================================================
# MANUAL JOBS
# =============================================================================

async def process_ingest_job(ctx: Dict, job_id: str) -> Dict:
    """Ingest one reporting job on demand.

    Args:
        ctx: ARQ context
        job_id: Provider reporting job id

    Returns:
        Dict with success status and ingestion results
    """
    logger.info("[ARQ] Starting manual ingestion for job %s", job_id)

    try:
        result = await asyncio.to_thread(ingest_job_now, job_id)
        return {"success": True, **result}
    except ReportIngestionError as e:
        logger.warning("[ARQ] Manual ingestion for job %s rejected: %s", job_id, e)
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("[ARQ] Manual ingestion for job %s failed: %s", job_id, e)
        capture_exception(e, extra={"operation": "process_ingest_job", "job_id": job_id})
        return {"success": False, "error": str(e)}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize Sentry and log config."""
    import platform

    init_sentry()

    logger.info("=" * 60)
    logger.info("[ARQ] Ingestion worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {QUEUE_NAME}")
    logger.info("[ARQ] Cron: ingestion sweep hourly at :00, metadata refresh daily at 00:00 UTC")
    logger.info("=" * 60)

    ctx["startup_time"] = datetime.now(timezone.utc)
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("[ARQ] Worker shutting down (jobs processed: %d, uptime: %s)", jobs, uptime)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    - Sweeps are sequential and idempotent, so one running sweep at a time
      (`unique=True`) is enough; a missed tick is caught by the next one
    - max_tries=1: retries of failed report files are owned by the ledger,
      not by ARQ
    """

    functions = [
        process_ingest_job,
        scheduled_ingestion_sweep,
        scheduled_metadata_refresh,
    ]

    cron_jobs = [
        cron(scheduled_ingestion_sweep, minute=0, unique=True, timeout=3600),
        cron(scheduled_metadata_refresh, hour=0, minute=0, unique=True, timeout=3600),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    max_jobs = 4
    job_timeout = 3600               # A full sweep over many jobs can take a while
    keep_result = 3600               # Keep results for 1 hour
    max_tries = 1
    health_check_interval = 30

    queue_name = QUEUE_NAME
