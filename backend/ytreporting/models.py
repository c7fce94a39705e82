"""SQLAlchemy ORM models and enums.

This module defines the ingestion schema using UUID primary keys. User ids
are opaque strings issued by the identity provider; this service never
interprets them.

Tables:
    user_credentials       delegated Google OAuth credential per user
    youtube_jobs           reporting jobs registered by users
    youtube_report_files   ingestion ledger, one row per (user, job, report)
    youtube_daily_metrics  parsed metric rows owned by a ledger entry
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class JobStatusEnum(str, enum.Enum):
    active = "active"
    inactive = "inactive"  # Owner has no usable Google credential


class ReportFileStatusEnum(str, enum.Enum):
    pending = "pending"  # Claimed, download/persist in progress (or crashed)
    parsed = "parsed"    # Rows durably stored; never re-fetched
    error = "error"      # Last attempt failed; eligible for retry per policy


# Core models ----------------------------------------------------

class UserCredential(Base):
    """Encrypted Google OAuth credential for one user.

    WHAT:
        Access token, refresh token and server-declared expiry, encrypted
        with the Fernet key from `ytreporting.security`.
    WHY:
        The worker calls the Reporting API on the user's behalf long after
        the interactive session ended.
    """
    __tablename__ = "user_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, unique=True, index=True, nullable=False)
    provider = Column(String, nullable=False, default="google")
    access_token_enc = Column(String, nullable=True)
    refresh_token_enc = Column(String, nullable=True)
    # Epoch milliseconds, computed from `expires_in` at issuance
    expires_at_ms = Column(BigInteger, nullable=True)
    scopes = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __str__(self):
        return f"{self.provider} credential for {self.user_id}"


class ReportingJob(Base):
    """A user's standing YouTube Reporting API job (one report type)."""
    __tablename__ = "youtube_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_id = Column(String, unique=True, index=True, nullable=False)  # Provider job id
    user_id = Column(String, index=True, nullable=False)
    report_type_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    create_time = Column(String, nullable=True)  # Provider RFC3339 timestamp
    status = Column(
        Enum(JobStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=JobStatusEnum.active,
    )
    last_refreshed = Column(DateTime, nullable=True)  # Last metadata refresh from provider
    created_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"{self.name} ({self.report_type_id})"


class ReportFileLedger(Base):
    """Ingestion ledger entry for one provider report file.

    WHAT:
        Tracks status (pending/parsed/error), content checksum and retry
        bookkeeping for each (user, job, report).
    WHY:
        System of record for idempotency: `parsed` means the rows are durable
        and the file must never be downloaded again.
    """
    __tablename__ = "youtube_report_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    job_id = Column(String, nullable=False)
    report_id = Column(String, nullable=False)
    start_time = Column(String, nullable=True)
    end_time = Column(String, nullable=True)
    file_checksum = Column(String(64), nullable=True)  # sha256 hex of raw payload
    download_url = Column(Text, nullable=True)
    status = Column(
        Enum(ReportFileStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=ReportFileStatusEnum.pending,
    )
    processed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # Retry bookkeeping
    attempt_count = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    metrics = relationship("DailyMetric", back_populates="report_file", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("user_id", "job_id", "report_id", name="uq_report_files_user_job_report"),
    )

    def __str__(self):
        return f"{self.report_id} [{self.status.value if self.status else 'unknown'}]"


class DailyMetric(Base):
    """One parsed CSV row. Owned by exactly one ledger entry."""
    __tablename__ = "youtube_daily_metrics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    report_file_id = Column(
        UUID(as_uuid=True),
        ForeignKey("youtube_report_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False)
    job_id = Column(String, nullable=False)
    report_date = Column(String(10), nullable=False)  # YYYY-MM-DD
    channel_id = Column(String, nullable=False)
    video_id = Column(String, nullable=True)
    views = Column(BigInteger, nullable=False, default=0)
    watch_time_minutes = Column(Float, nullable=False, default=0)
    estimated_revenue = Column(Numeric(14, 6), nullable=True)
    subscribers_gained = Column(Integer, nullable=False, default=0)
    subscribers_lost = Column(Integer, nullable=False, default=0)
    # Full raw CSV row for forward compatibility with provider schema changes
    metric_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    report_file = relationship("ReportFileLedger", back_populates="metrics")

    __table_args__ = (
        Index("ix_daily_metrics_user_job_date", "user_id", "job_id", "report_date"),
    )
