"""Pytest configuration for ytreporting integration tests

WHAT: Provides shared fixtures for ledger, ingestion and scheduler tests
WHY: Ensures consistent test setup, database isolation, and fake provider clients
REFERENCES:
    - ytreporting/database.py: Database configuration
    - ytreporting/services/report_ingestion_service.py: Ingestion protocol
"""

import os
import time
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (ytreporting.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False}
    )

    from ytreporting.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite database for tests that use several sessions/threads."""
    db_file = tmp_path / "ingestion.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    from ytreporting.database import Base
    Base.metadata.create_all(bind=engine)

    yield SessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


# ============================================================================
# Fake provider clients
# ============================================================================

class FakeReportingClient:
    """In-memory stand-in for YouTubeReportingClient.

    `failures` maps report id -> list of exceptions raised by successive
    downloads of that report; once exhausted the payload is returned.
    """

    def __init__(
        self,
        reports: Optional[List] = None,
        payloads: Optional[Dict[str, bytes]] = None,
        failures: Optional[Dict[str, List[Exception]]] = None,
        list_error: Optional[Exception] = None,
    ):
        self.reports = list(reports or [])
        self.payloads = dict(payloads or {})
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.list_error = list_error
        self.downloads: List[str] = []
        self.jobs: Dict = {}
        self.closed = 0

    def list_reports(self, job_id):
        if self.list_error is not None:
            raise self.list_error
        return [r for r in self.reports if r.job_id in (None, job_id)]

    def download_report(self, job_id, report_id):
        self.downloads.append(report_id)
        pending = self.failures.get(report_id)
        if pending:
            raise pending.pop(0)
        return self.payloads[report_id]

    def get_job(self, job_id):
        return self.jobs[job_id]

    def close(self):
        self.closed += 1


class FakeTokenClient:
    """Stand-in for GoogleTokenClient that counts refreshes."""

    def __init__(self, access_token="refreshed-token", expires_in=3600, error=None, delay=0.0):
        self.access_token = access_token
        self.expires_in = expires_in
        self.error = error
        self.delay = delay
        self.calls = 0

    def refresh_access_token(self, refresh_token):
        from ytreporting.services.google_token_client import TokenResponse

        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TokenResponse(access_token=self.access_token, expires_in=self.expires_in)


def now_ms() -> int:
    return int(time.time() * 1000)


def seed_credential(db, user_id, *, access_token="access-token", refresh_token="refresh-token", expires_in_seconds=3600):
    from ytreporting.services.token_service import store_credential

    return store_credential(
        db,
        user_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at_ms=now_ms() + expires_in_seconds * 1000,
        scopes="https://www.googleapis.com/auth/yt-analytics.readonly",
    )


def seed_job(db, user_id, job_id, *, report_type_id="channel_basic_a2", status=None, last_refreshed=None):
    from ytreporting.models import JobStatusEnum, ReportingJob

    job = ReportingJob(
        job_id=job_id,
        user_id=user_id,
        report_type_id=report_type_id,
        name=f"{report_type_id} job",
        status=status or JobStatusEnum.active,
        last_refreshed=last_refreshed,
    )
    db.add(job)
    db.commit()
    return job


def make_report(report_id, job_id="job-1", start_time="2024-05-01T00:00:00Z", end_time="2024-05-02T00:00:00Z"):
    from ytreporting.services.youtube_reporting_client import ReportFile

    return ReportFile(
        id=report_id,
        jobId=job_id,
        startTime=start_time,
        endTime=end_time,
        createTime="2024-05-02T06:00:00Z",
        downloadUrl=f"https://youtubereporting.googleapis.com/v1/media/{report_id}",
    )
