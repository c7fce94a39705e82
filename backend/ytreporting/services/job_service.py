"""Reporting job registration and metadata refresh.

WHAT:
    Persists the user's YouTube Reporting jobs locally and keeps their
    provider metadata current.

WHY:
    YouTube API Services policies require stored API data to be refreshed
    (or deleted) within 30 days; the daily refresh keeps job metadata
    compliant. Registration adopts an existing provider job for the same
    report type instead of failing, since the provider allows one job per
    report type per channel.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ytreporting.config import get_settings
from ytreporting.models import JobStatusEnum, ReportingJob
from ytreporting.services.youtube_reporting_client import (
    ReportingJobDescriptor,
    YouTubeDuplicateJobError,
    YouTubeReportingClient,
)

logger = logging.getLogger(__name__)


def save_job(db: Session, user_id: str, descriptor: ReportingJobDescriptor) -> ReportingJob:
    """Insert or update the local row for a provider job."""
    job = db.query(ReportingJob).filter(ReportingJob.job_id == descriptor.id).first()
    if job is None:
        job = ReportingJob(job_id=descriptor.id, user_id=user_id)
        db.add(job)

    job.report_type_id = descriptor.report_type_id or job.report_type_id
    job.name = descriptor.name or job.name or descriptor.id
    job.create_time = descriptor.create_time or job.create_time
    job.status = JobStatusEnum.active
    job.last_refreshed = datetime.utcnow()

    db.commit()
    db.refresh(job)
    return job


def create_reporting_job(
    db: Session,
    client: YouTubeReportingClient,
    user_id: str,
    report_type_id: str,
    name: str,
) -> ReportingJob:
    """Create a job at the provider and save it locally.

    On `YouTubeDuplicateJobError` the existing provider job for the same
    report type is adopted. The duplicate error is re-raised when no such job
    can be found.
    """
    try:
        descriptor = client.create_job(report_type_id, name)
    except YouTubeDuplicateJobError:
        existing = next(
            (j for j in client.list_jobs() if j.report_type_id == report_type_id),
            None,
        )
        if existing is None:
            raise
        logger.info(
            "[JOBS] Job for %s already exists at provider, adopting %s", report_type_id, existing.id,
        )
        descriptor = existing

    if descriptor.report_type_id is None:
        descriptor = descriptor.model_copy(update={"report_type_id": report_type_id})

    job = save_job(db, user_id, descriptor)
    logger.info("[JOBS] Saved job %s (%s) for %s", job.job_id, job.report_type_id, user_id)
    return job


def list_active_jobs(db: Session) -> List[ReportingJob]:
    return (
        db.query(ReportingJob)
        .filter(ReportingJob.status == JobStatusEnum.active)
        .order_by(ReportingJob.created_at)
        .all()
    )


def mark_job_inactive(db: Session, job: ReportingJob) -> None:
    job.status = JobStatusEnum.inactive
    job.last_refreshed = datetime.utcnow()
    db.commit()


def jobs_due_for_refresh(db: Session, now: Optional[datetime] = None) -> List[ReportingJob]:
    """Jobs never refreshed or last refreshed at or before the max age cutoff."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=get_settings().METADATA_REFRESH_MAX_AGE_DAYS)
    return (
        db.query(ReportingJob)
        .filter(or_(ReportingJob.last_refreshed.is_(None), ReportingJob.last_refreshed <= cutoff))
        .all()
    )


def refresh_job_metadata(db: Session, client: YouTubeReportingClient, job: ReportingJob) -> ReportingJob:
    """Re-read a job from the provider and update the local row."""
    descriptor = client.get_job(job.job_id)

    job.name = descriptor.name or job.name
    job.report_type_id = descriptor.report_type_id or job.report_type_id
    job.create_time = descriptor.create_time or job.create_time
    job.last_refreshed = datetime.utcnow()
    db.commit()

    logger.info("[JOBS] Refreshed metadata for job %s", job.job_id)
    return job
