"""Ingestion scheduler service.

WHAT:
    Job functions for the two periodic triggers and the manual trigger:
    the hourly ingestion sweep over all active reporting jobs, the daily
    job-metadata refresh, and an on-demand ingestion of a single job.

WHY:
    - Hourly sweep picks up report files as soon as YouTube publishes them
      (new files appear roughly daily, at unpredictable times)
    - Daily refresh keeps stored job metadata within the 30-day policy window
    - Jobs are processed sequentially; one job's failure never stops the sweep

SCHEDULE (all times UTC):
    - :00 every hour: ingestion sweep
    - 00:00 daily: metadata refresh

REFERENCES:
    - ytreporting/workers/arq_worker.py (cron registration)
    - ytreporting/services/report_ingestion_service.py
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ytreporting.database import SessionLocal
from ytreporting.models import ReportingJob
from ytreporting.services.google_token_client import GoogleTokenClient
from ytreporting.services.job_service import (
    jobs_due_for_refresh,
    list_active_jobs,
    mark_job_inactive,
    refresh_job_metadata,
)
from ytreporting.services.report_ingestion_service import (
    ReportIngestionError,
    ingest_reports_for_job,
)
from ytreporting.services.token_refresher import get_valid_access_token
from ytreporting.services.youtube_reporting_client import YouTubeReportingClient
from ytreporting.telemetry import capture_exception

logger = logging.getLogger(__name__)

# Cron schedule for the ARQ worker
INGESTION_CRON = "0 * * * *"         # Every hour at :00
METADATA_REFRESH_CRON = "0 0 * * *"  # Daily at 00:00 UTC

ClientFactory = Callable[[str], YouTubeReportingClient]


def _ingest_job(
    db: Session,
    job: ReportingJob,
    client_factory: ClientFactory,
    token_client: Optional[GoogleTokenClient],
) -> Dict:
    """Resolve the owner's token and ingest one job. Never raises."""
    job_id, user_id = job.job_id, job.user_id

    try:
        token = get_valid_access_token(user_id, db=db, token_client=token_client)
        if not token:
            logger.warning(
                "[SCHEDULER] Skipping job %s: no Google credential for user %s, marking inactive",
                job_id, user_id,
            )
            mark_job_inactive(db, job)
            return {"job_id": job_id, "status": "inactive"}

        with closing(client_factory(token)) as client:
            result = ingest_reports_for_job(db, client, user_id=user_id, job_id=job_id)
    except Exception as e:
        db.rollback()
        logger.error("[SCHEDULER] Failed to ingest reports for job %s: %s", job_id, e)
        capture_exception(e, extra={
            "operation": "ingest_job",
            "job_id": job_id,
        })
        return {"job_id": job_id, "status": "failed", "error": str(e)}

    return {"status": "aborted" if result.aborted else "ok", **result.to_dict()}


# =============================================================================
# JOB FUNCTIONS (Called by ARQ worker)
# =============================================================================

def run_ingestion_sweep(
    db: Optional[Session] = None,
    client_factory: Optional[ClientFactory] = None,
    token_client: Optional[GoogleTokenClient] = None,
) -> Dict:
    """Ingest new report files for every active job.

    WHEN:
        Every hour at :00.

    Returns:
        Summary dict with per-status job counts and totals.
    """
    logger.info("[SCHEDULER] Starting ingestion sweep")

    owns_session = db is None
    db = db or SessionLocal()
    client_factory = client_factory or YouTubeReportingClient
    summary = {
        "jobs": 0,
        "ok": 0,
        "inactive": 0,
        "aborted": 0,
        "failed": 0,
        "reports_ingested": 0,
        "reports_failed": 0,
        "rows_inserted": 0,
    }

    try:
        jobs = list_active_jobs(db)
        summary["jobs"] = len(jobs)
        if not jobs:
            logger.info("[SCHEDULER] No active jobs found for ingestion")
            return summary

        for job in jobs:
            outcome = _ingest_job(db, job, client_factory, token_client)
            summary[outcome["status"]] += 1
            summary["reports_ingested"] += outcome.get("ingested", 0)
            summary["reports_failed"] += outcome.get("failed", 0)
            summary["rows_inserted"] += outcome.get("rows_inserted", 0)

        logger.info(
            "[SCHEDULER] Ingestion sweep complete: %d jobs, %d reports ingested, %d failed, %d rows",
            summary["jobs"], summary["reports_ingested"], summary["reports_failed"], summary["rows_inserted"],
        )

    except Exception as e:
        logger.error("[SCHEDULER] Ingestion sweep failed: %s", e)
        capture_exception(e, extra={
            "operation": "ingestion_sweep",
            "job": "ingestion_sweep",
        })
        summary["error"] = str(e)
    finally:
        if owns_session:
            db.close()

    return summary


def run_metadata_refresh(
    db: Optional[Session] = None,
    client_factory: Optional[ClientFactory] = None,
    token_client: Optional[GoogleTokenClient] = None,
) -> Dict:
    """Refresh provider metadata for jobs not refreshed in the last 30 days.

    WHEN:
        Daily at 00:00 UTC.
    """
    logger.info("[SCHEDULER] Starting metadata refresh")

    owns_session = db is None
    db = db or SessionLocal()
    client_factory = client_factory or YouTubeReportingClient
    summary = {"jobs": 0, "refreshed": 0, "skipped": 0, "failed": 0}

    try:
        jobs = jobs_due_for_refresh(db)
        summary["jobs"] = len(jobs)
        if not jobs:
            logger.info("[SCHEDULER] No jobs require metadata refresh")
            return summary

        for job in jobs:
            job_id = job.job_id
            try:
                token = get_valid_access_token(job.user_id, db=db, token_client=token_client)
                if not token:
                    logger.warning("[SCHEDULER] Skipping job %s: no valid Google access token", job_id)
                    summary["skipped"] += 1
                    continue

                with closing(client_factory(token)) as client:
                    refresh_job_metadata(db, client, job)
                summary["refreshed"] += 1
            except Exception as e:
                db.rollback()
                summary["failed"] += 1
                logger.error("[SCHEDULER] Metadata refresh failed for job %s: %s", job_id, e)
                capture_exception(e, extra={
                    "operation": "refresh_job_metadata",
                    "job_id": job_id,
                })

        logger.info(
            "[SCHEDULER] Metadata refresh complete: %d refreshed, %d skipped, %d failed",
            summary["refreshed"], summary["skipped"], summary["failed"],
        )

    except Exception as e:
        logger.error("[SCHEDULER] Metadata refresh failed: %s", e)
        capture_exception(e, extra={
            "operation": "metadata_refresh",
            "job": "metadata_refresh",
        })
        summary["error"] = str(e)
    finally:
        if owns_session:
            db.close()

    return summary


def ingest_job_now(
    job_id: str,
    db: Optional[Session] = None,
    client_factory: Optional[ClientFactory] = None,
    token_client: Optional[GoogleTokenClient] = None,
) -> Dict:
    """Ingest one job on demand.

    Shares the ledger protocol with the sweep, so running both at once is
    safe: the ledger claim lets only one of them process each report file.

    Raises:
        ReportIngestionError: Unknown job, or the owner has no usable credential.
    """
    owns_session = db is None
    db = db or SessionLocal()
    client_factory = client_factory or YouTubeReportingClient

    try:
        job = db.query(ReportingJob).filter(ReportingJob.job_id == job_id).first()
        if job is None:
            raise ReportIngestionError(f"Unknown reporting job {job_id}")

        token = get_valid_access_token(job.user_id, db=db, token_client=token_client)
        if not token:
            raise ReportIngestionError(f"No Google credential for user {job.user_id}")

        logger.info("[SCHEDULER] Manual ingestion for job %s", job_id)
        with closing(client_factory(token)) as client:
            result = ingest_reports_for_job(db, client, user_id=job.user_id, job_id=job.job_id)
        return result.to_dict()
    finally:
        if owns_session:
            db.close()
