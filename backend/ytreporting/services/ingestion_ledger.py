"""Ingestion ledger for YouTube report files.

WHAT:
    Durable per-(user, job, report) record of ingestion state:

        absent -> pending -> parsed
                          -> error -> pending (later pass, bounded)

WHY:
    The provider keeps serving the same report files for weeks. The ledger is
    the system of record that a file's rows are already stored (`parsed`), so
    it is never downloaded twice, and the only guard against two workers
    processing the same file at once (the atomic claim).

RETRY POLICY:
    An `error` entry is re-claimable once `next_attempt_at` has passed, up to
    LEDGER_MAX_ATTEMPTS attempts; backoff doubles from
    LEDGER_RETRY_BASE_MINUTES and is capped at LEDGER_RETRY_MAX_MINUTES.
    A `pending` entry whose claim is older than LEDGER_CLAIM_LEASE_MINUTES is
    treated as abandoned by a crashed worker and may be re-claimed, within the
    same attempt limit; once that is used up `expire_abandoned_claim` moves it
    to `error`. Exhausted entries stay in `error` until `reset_ledger_entry`.

REFERENCES:
    - ytreporting/services/report_ingestion_service.py (protocol driver)
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ytreporting.config import Settings, get_settings
from ytreporting.models import ReportFileLedger, ReportFileStatusEnum
from ytreporting.telemetry import capture_message

logger = logging.getLogger(__name__)

_MAX_ERROR_MESSAGE = 2000


def get_ledger_entry(db: Session, user_id: str, job_id: str, report_id: str) -> Optional[ReportFileLedger]:
    return (
        db.query(ReportFileLedger)
        .filter(
            ReportFileLedger.user_id == user_id,
            ReportFileLedger.job_id == job_id,
            ReportFileLedger.report_id == report_id,
        )
        .first()
    )


def compute_next_attempt_at(attempt_count: int, now: datetime, settings: Optional[Settings] = None) -> datetime:
    """Backoff after the given (1-based) failed attempt."""
    settings = settings or get_settings()
    minutes = settings.LEDGER_RETRY_BASE_MINUTES * (2 ** max(attempt_count - 1, 0))
    return now + timedelta(minutes=min(minutes, settings.LEDGER_RETRY_MAX_MINUTES))


def is_exhausted(entry: ReportFileLedger, settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    return (
        entry.status == ReportFileStatusEnum.error
        and (entry.attempt_count or 0) >= settings.LEDGER_MAX_ATTEMPTS
    )


def _insert_for(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.bind.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def claim_report_file(
    db: Session,
    *,
    user_id: str,
    job_id: str,
    report_id: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    download_url: Optional[str] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Optional[UUID]:
    """Atomically claim a report file for processing.

    WHAT:
        Single INSERT ... ON CONFLICT DO UPDATE ... WHERE <claimable>
        RETURNING id. Creates the entry as `pending`, or flips an existing
        claimable entry back to `pending` and bumps `attempt_count`.
    WHY:
        Two workers racing on the same report file must not both download
        and write rows. The database decides; the loser gets no row back.

    Returns:
        The ledger entry id when this caller owns the claim, else None
        (already parsed, owned by another worker, not yet due, or exhausted).
    """
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    table = ReportFileLedger.__table__
    lease_cutoff = now - timedelta(minutes=settings.LEDGER_CLAIM_LEASE_MINUTES)

    stmt = _insert_for(db)(table).values(
        user_id=user_id,
        job_id=job_id,
        report_id=report_id,
        start_time=start_time,
        end_time=end_time,
        download_url=download_url,
        status=ReportFileStatusEnum.pending,
        attempt_count=1,
        claimed_at=now,
        created_at=now,
    )

    claimable = or_(
        and_(
            table.c.status == ReportFileStatusEnum.error,
            table.c.attempt_count < settings.LEDGER_MAX_ATTEMPTS,
            or_(table.c.next_attempt_at.is_(None), table.c.next_attempt_at <= now),
        ),
        and_(
            table.c.status == ReportFileStatusEnum.pending,
            table.c.attempt_count < settings.LEDGER_MAX_ATTEMPTS,
            or_(table.c.claimed_at.is_(None), table.c.claimed_at <= lease_cutoff),
        ),
    )

    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.user_id, table.c.job_id, table.c.report_id],
        set_={
            "status": ReportFileStatusEnum.pending,
            "attempt_count": table.c.attempt_count + 1,
            "claimed_at": now,
            "next_attempt_at": None,
            "start_time": stmt.excluded.start_time,
            "end_time": stmt.excluded.end_time,
            "download_url": stmt.excluded.download_url,
        },
        where=claimable,
    ).returning(table.c.id)

    entry_id = db.execute(stmt).scalar()
    db.commit()

    if entry_id is None:
        logger.debug("[LEDGER] Claim refused for report %s (job %s)", report_id, job_id)
    else:
        logger.debug("[LEDGER] Claimed report %s (job %s) as %s", report_id, job_id, entry_id)
    return entry_id


def record_download(db: Session, entry_id: UUID, *, file_checksum: str) -> None:
    """Store the content checksum on the pending entry."""
    db.execute(
        update(ReportFileLedger)
        .where(ReportFileLedger.id == entry_id)
        .values(file_checksum=file_checksum)
    )
    db.commit()


def mark_parsed(db: Session, entry_id: UUID, now: Optional[datetime] = None) -> None:
    db.execute(
        update(ReportFileLedger)
        .where(ReportFileLedger.id == entry_id)
        .values(
            status=ReportFileStatusEnum.parsed,
            processed_at=now or datetime.utcnow(),
            error_message=None,
            next_attempt_at=None,
        )
    )
    db.commit()


def mark_error(
    db: Session,
    entry_id: UUID,
    error: BaseException,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Record a failed attempt and schedule the next one per the retry policy."""
    settings = settings or get_settings()
    now = now or datetime.utcnow()

    # The failing step may have left the session in a failed transaction
    db.rollback()

    entry = db.get(ReportFileLedger, entry_id)
    attempts = entry.attempt_count if entry is not None else 1
    message = str(error) or error.__class__.__name__

    db.execute(
        update(ReportFileLedger)
        .where(ReportFileLedger.id == entry_id)
        .values(
            status=ReportFileStatusEnum.error,
            error_message=message[:_MAX_ERROR_MESSAGE],
            next_attempt_at=compute_next_attempt_at(attempts, now, settings),
        )
    )
    db.commit()

    if attempts >= settings.LEDGER_MAX_ATTEMPTS:
        _report_exhausted(entry_id, attempts, message)


def expire_abandoned_claim(
    db: Session,
    entry_id: UUID,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> bool:
    """Move a lease-expired `pending` entry with no attempts left to `error`.

    A file that kills the worker every time never reaches `mark_error`; this
    parks it like any other exhausted entry so `reset_ledger_entry` applies.

    Returns:
        True when this call moved the entry.
    """
    settings = settings or get_settings()
    now = now or datetime.utcnow()
    lease_cutoff = now - timedelta(minutes=settings.LEDGER_CLAIM_LEASE_MINUTES)
    message = "Claim lease expired before the file was processed"

    result = db.execute(
        update(ReportFileLedger)
        .where(
            ReportFileLedger.id == entry_id,
            ReportFileLedger.status == ReportFileStatusEnum.pending,
            ReportFileLedger.attempt_count >= settings.LEDGER_MAX_ATTEMPTS,
            or_(ReportFileLedger.claimed_at.is_(None), ReportFileLedger.claimed_at <= lease_cutoff),
        )
        .values(
            status=ReportFileStatusEnum.error,
            error_message=message,
            next_attempt_at=None,
        )
    )
    db.commit()

    if not result.rowcount:
        return False

    entry = db.get(ReportFileLedger, entry_id)
    _report_exhausted(entry_id, entry.attempt_count if entry is not None else 0, message)
    return True


def _report_exhausted(entry_id: UUID, attempts: int, message: str) -> None:
    logger.error("[LEDGER] Entry %s exhausted after %d attempts: %s", entry_id, attempts, message)
    capture_message(
        "Report file exhausted its retry attempts",
        level="error",
        extra={"entry_id": str(entry_id), "attempts": attempts, "error": message},
    )


def list_ledger_entries(
    db: Session,
    user_id: str,
    job_id: str,
    status: Optional[ReportFileStatusEnum] = None,
) -> List[ReportFileLedger]:
    """Ledger entries for a user's job, newest first."""
    query = (
        db.query(ReportFileLedger)
        .filter(ReportFileLedger.user_id == user_id)
        .filter(ReportFileLedger.job_id == job_id)
    )
    if status is not None:
        query = query.filter(ReportFileLedger.status == status)
    return query.order_by(ReportFileLedger.created_at.desc()).all()


def reset_ledger_entry(db: Session, entry_id: UUID) -> Optional[ReportFileLedger]:
    """Make an `error` entry immediately claimable again with a fresh budget.

    `parsed` entries are left untouched; re-ingesting stored rows is not a
    retry. Returns the entry, or None when it does not exist.
    """
    entry = db.get(ReportFileLedger, entry_id)
    if entry is None:
        return None

    if entry.status != ReportFileStatusEnum.error:
        logger.info("[LEDGER] Entry %s is %s, nothing to reset", entry_id, entry.status.value)
        return entry

    entry.attempt_count = 0
    entry.next_attempt_at = None
    db.commit()
    db.refresh(entry)
    logger.info("[LEDGER] Reset entry %s for report %s", entry_id, entry.report_id)
    return entry
