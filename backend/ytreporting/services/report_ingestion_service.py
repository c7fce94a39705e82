"""Report ingestion service.

WHAT:
    Drives the at-most-once ingestion protocol for report files:

        1. Ledger lookup; `parsed` -> skip without downloading
        2. Atomic claim (pending, attempt_count += 1); refused -> skip
        3. Download raw bytes, record SHA-256 checksum
        4. Parse CSV, delete the entry's old rows, insert new rows in batches
        5. Mark `parsed`
        On any failure after the claim: mark `error` (with retry schedule)
        and re-raise.

WHY:
    Report files are listed again on every sweep for weeks. The ledger
    makes repeated sweeps cheap (no re-download of parsed files) and makes a
    partially written report self-healing (delete + re-insert on retry).

REFERENCES:
    - ytreporting/services/ingestion_ledger.py
    - ytreporting/services/csv_report_parser.py
    - ytreporting/services/metrics_writer.py
"""

from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ytreporting.config import Settings, get_settings
from ytreporting.models import ReportFileStatusEnum
from ytreporting.services import ingestion_ledger as ledger
from ytreporting.services.csv_report_parser import decode_report_body, parse_csv_report
from ytreporting.services.metrics_writer import delete_metrics_for_report_file, insert_daily_metrics
from ytreporting.services.youtube_reporting_client import (
    ReportFile,
    YouTubeAuthenticationError,
    YouTubeReportingClient,
)
from ytreporting.telemetry import capture_exception

logger = logging.getLogger(__name__)


class ReportIngestionError(Exception):
    """Raised when a job cannot be ingested at all (unknown job, no credential)."""
    pass


class IngestOutcome(str, enum.Enum):
    ingested = "ingested"
    already_parsed = "already_parsed"
    not_claimed = "not_claimed"  # Owned by another worker or not yet due for retry
    exhausted = "exhausted"      # Retry budget used up; needs reset_ledger_entry


@dataclass
class IngestionResult:
    """Summary of one job's ingestion pass."""

    job_id: str
    reports_seen: int = 0
    ingested: int = 0
    skipped: int = 0
    failed: int = 0
    rows_inserted: int = 0
    errors: List[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "reports_seen": self.reports_seen,
            "ingested": self.ingested,
            "skipped": self.skipped,
            "failed": self.failed,
            "rows_inserted": self.rows_inserted,
            "errors": list(self.errors),
            "aborted": self.aborted,
        }


def compute_checksum(payload: bytes) -> str:
    """SHA-256 hex digest of the raw report payload."""
    return hashlib.sha256(payload).hexdigest()


def ingest_report_file(
    db: Session,
    client: YouTubeReportingClient,
    *,
    user_id: str,
    job_id: str,
    report: ReportFile,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> tuple[IngestOutcome, int]:
    """Ingest one report file at most once.

    Returns:
        (outcome, rows inserted)

    Raises:
        Whatever failed after the claim (download, parse, storage); the
        ledger entry is already marked `error` when it propagates.
    """
    settings = settings or get_settings()

    existing = ledger.get_ledger_entry(db, user_id, job_id, report.id)
    if existing is not None:
        if existing.status == ReportFileStatusEnum.parsed:
            logger.debug("[INGEST] Report %s already ingested, skipping", report.id)
            return IngestOutcome.already_parsed, 0
        if existing.status == ReportFileStatusEnum.pending and ledger.expire_abandoned_claim(
            db, existing.id, now=now, settings=settings,
        ):
            logger.warning("[INGEST] Report %s abandoned by crashed workers too often, skipping", report.id)
            return IngestOutcome.exhausted, 0
        if ledger.is_exhausted(existing, settings):
            logger.warning(
                "[INGEST] Report %s exhausted its retry budget (%d attempts), skipping: %s",
                report.id, existing.attempt_count, existing.error_message,
            )
            return IngestOutcome.exhausted, 0

    entry_id = ledger.claim_report_file(
        db,
        user_id=user_id,
        job_id=job_id,
        report_id=report.id,
        start_time=report.start_time,
        end_time=report.end_time,
        download_url=report.download_url,
        now=now,
        settings=settings,
    )
    if entry_id is None:
        logger.info("[INGEST] Report %s not claimable now, skipping", report.id)
        return IngestOutcome.not_claimed, 0

    try:
        raw = client.download_report(job_id, report.id)
        ledger.record_download(db, entry_id, file_checksum=compute_checksum(raw))

        parsed_rows = parse_csv_report(decode_report_body(raw), report)

        delete_metrics_for_report_file(db, entry_id)
        inserted = insert_daily_metrics(
            db,
            [
                {
                    "report_file_id": entry_id,
                    "user_id": user_id,
                    "job_id": job_id,
                    "report_date": row.report_date,
                    "channel_id": row.channel_id,
                    "video_id": row.video_id,
                    "views": row.views,
                    "watch_time_minutes": row.watch_time_minutes,
                    "estimated_revenue": row.estimated_revenue,
                    "subscribers_gained": row.subscribers_gained,
                    "subscribers_lost": row.subscribers_lost,
                    "metric_payload": row.metric_payload,
                }
                for row in parsed_rows
            ],
            batch_size=settings.METRICS_BATCH_SIZE,
        )

        ledger.mark_parsed(db, entry_id, now=now)
    except Exception as e:
        logger.error("[INGEST] Report %s failed: %s", report.id, e)
        ledger.mark_error(db, entry_id, e, now=now, settings=settings)
        raise

    logger.info("[INGEST] Report %s ingested (%d rows)", report.id, inserted)
    return IngestOutcome.ingested, inserted


def ingest_reports_for_job(
    db: Session,
    client: YouTubeReportingClient,
    *,
    user_id: str,
    job_id: str,
    settings: Optional[Settings] = None,
) -> IngestionResult:
    """Ingest every undelivered report file of one job.

    Per-report failures are counted and the loop continues. An authentication
    failure ends the pass for this job (every further call would fail too)
    and sets `aborted` on the result.
    """
    result = IngestionResult(job_id=job_id)

    reports = client.list_reports(job_id)
    result.reports_seen = len(reports)
    if not reports:
        logger.info("[INGEST] No reports available for job %s", job_id)
        return result

    for report in reports:
        try:
            outcome, rows = ingest_report_file(
                db, client, user_id=user_id, job_id=job_id, report=report, settings=settings,
            )
        except YouTubeAuthenticationError as e:
            result.failed += 1
            result.errors.append(f"{report.id}: {e}")
            result.aborted = True
            logger.error("[INGEST] Authentication failed for job %s, aborting job: %s", job_id, e)
            break
        except Exception as e:
            result.failed += 1
            result.errors.append(f"{report.id}: {e}")
            capture_exception(e, extra={
                "operation": "ingest_report_file",
                "job_id": job_id,
                "report_id": report.id,
            })
            continue

        if outcome == IngestOutcome.ingested:
            result.ingested += 1
            result.rows_inserted += rows
        else:
            result.skipped += 1

    logger.info(
        "[INGEST] Job %s: %d reports, %d ingested, %d skipped, %d failed, %d rows",
        job_id, result.reports_seen, result.ingested, result.skipped, result.failed, result.rows_inserted,
    )
    return result
