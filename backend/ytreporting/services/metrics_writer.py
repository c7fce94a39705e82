"""Metrics writer for parsed daily report rows.

WHAT:
    Batched inserts into `youtube_daily_metrics`, deletion of the rows owned
    by one ledger entry, and a filtered read for consumers.

WHY:
    Large channel reports carry tens of thousands of rows; inserts are split
    into fixed-size batches to stay under the storage layer's payload limit.
    The first failing batch aborts the write so the ledger entry is marked
    `error` and the whole report is re-ingested later (delete + re-insert).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ytreporting.config import get_settings
from ytreporting.models import DailyMetric

logger = logging.getLogger(__name__)


class MetricsWriteError(Exception):
    """Raised when a metrics batch cannot be persisted."""
    pass


def insert_daily_metrics(
    db: Session,
    rows: Sequence[Dict[str, Any]],
    batch_size: Optional[int] = None,
) -> int:
    """Insert metric rows in sequential fixed-size batches.

    Each batch commits on its own. Earlier batches stay persisted when a
    later one fails; the caller re-ingests the report from scratch.

    Returns:
        Number of rows inserted.

    Raises:
        MetricsWriteError: On the first failing batch.
    """
    if not rows:
        return 0

    batch_size = batch_size or get_settings().METRICS_BATCH_SIZE
    inserted = 0

    for start in range(0, len(rows), batch_size):
        batch = list(rows[start:start + batch_size])
        try:
            db.execute(insert(DailyMetric), batch)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(
                "[METRICS] Failed to insert batch at offset %d (%d rows): %s",
                start, len(batch), e,
            )
            raise MetricsWriteError(f"Persisting daily metrics failed at row {start}: {e}") from e
        inserted += len(batch)

    logger.debug("[METRICS] Inserted %d rows in batches of %d", inserted, batch_size)
    return inserted


def delete_metrics_for_report_file(db: Session, report_file_id: UUID) -> int:
    """Delete all metric rows owned by a ledger entry. Returns the row count."""
    result = db.execute(
        delete(DailyMetric).where(DailyMetric.report_file_id == report_file_id)
    )
    db.commit()
    return result.rowcount or 0


def get_daily_metrics(
    db: Session,
    user_id: str,
    job_id: str,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = 100,
) -> List[DailyMetric]:
    """Stored metrics for a user's job, newest `report_date` first.

    Dates are inclusive `YYYY-MM-DD` bounds.
    """
    query = (
        db.query(DailyMetric)
        .filter(DailyMetric.user_id == user_id)
        .filter(DailyMetric.job_id == job_id)
    )
    if start_date:
        query = query.filter(DailyMetric.report_date >= start_date)
    if end_date:
        query = query.filter(DailyMetric.report_date <= end_date)

    return query.order_by(DailyMetric.report_date.desc()).limit(limit).all()
