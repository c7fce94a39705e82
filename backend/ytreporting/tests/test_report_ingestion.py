"""Tests for the report file ingestion protocol and ledger.

WHAT:
    End-to-end ingestion against an SQLite database with a fake Reporting
    client: idempotency, retry after error, bounded retry exhaustion,
    atomic claims and checksum bookkeeping.

WHY:
    The ledger is the only guarantee that a report file's rows are stored
    exactly once; these tests pin down every transition of its state machine.

REFERENCES:
    - ytreporting/services/report_ingestion_service.py
    - ytreporting/services/ingestion_ledger.py
"""

import hashlib
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from conftest import FakeReportingClient, make_report
from ytreporting.config import Settings
from ytreporting.models import DailyMetric, ReportFileLedger, ReportFileStatusEnum
from ytreporting.services import ingestion_ledger as ledger
from ytreporting.services.metrics_writer import MetricsWriteError
from ytreporting.services.report_ingestion_service import (
    IngestOutcome,
    ingest_report_file,
    ingest_reports_for_job,
)
from ytreporting.services.youtube_reporting_client import (
    YouTubeApiError,
    YouTubeAuthenticationError,
)

USER = "user-1"
JOB = "job-1"

REPORT_1_CSV = (
    b"date,channel_id,video_id,views,watch_time_minutes,estimated_revenue,subscribers_gained,subscribers_lost\r\n"
    b"20240501,UC1,vid1,100,250.5,1.25,3,1\r\n"
    b"20240501,UC1,vid2,40,80,,0,0\r\n"
    b"20240501,UC1,vid3,abc,12,0.5,1,0\r\n"
)
REPORT_2_CSV = (
    b"day,channelId,videoId,views,watchTimeMinutes\n"
    b"2024-05-02,UC1,vid1,7,9.5\n"
    b"2024-05-02,UC1,vid2\n"
    b"2024-05-02,UC1,vid3,5,1\n"
)


def _metric_count(db, report_id=None) -> int:
    query = db.query(DailyMetric)
    if report_id:
        query = query.join(ReportFileLedger).filter(ReportFileLedger.report_id == report_id)
    return query.count()


def _entry(db, report_id) -> ReportFileLedger:
    db.expire_all()
    return ledger.get_ledger_entry(db, USER, JOB, report_id)


class TestTwoReportScenario:
    def test_both_reports_ingested_then_skipped_on_rerun(self, test_db_session):
        client = FakeReportingClient(
            reports=[make_report("r1"), make_report("r2")],
            payloads={"r1": REPORT_1_CSV, "r2": REPORT_2_CSV},
        )

        result = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)

        assert result.reports_seen == 2
        assert result.ingested == 2
        assert result.failed == 0
        # r2's short row is dropped
        assert result.rows_inserted == 5
        assert _metric_count(test_db_session, "r1") == 3
        assert _metric_count(test_db_session, "r2") == 2

        r1 = _entry(test_db_session, "r1")
        assert r1.status == ReportFileStatusEnum.parsed
        assert r1.file_checksum == hashlib.sha256(REPORT_1_CSV).hexdigest()
        assert r1.processed_at is not None
        assert r1.error_message is None
        assert r1.start_time == "2024-05-01T00:00:00Z"

        # Second pass: nothing downloaded, nothing written
        rerun = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)

        assert client.downloads == ["r1", "r2"]
        assert rerun.ingested == 0
        assert rerun.skipped == 2
        assert _metric_count(test_db_session) == 5

    def test_rows_are_normalized(self, test_db_session):
        client = FakeReportingClient(reports=[make_report("r1")], payloads={"r1": REPORT_1_CSV})

        ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)

        rows = {
            row.video_id: row
            for row in test_db_session.query(DailyMetric).all()
        }
        assert rows["vid1"].report_date == "2024-05-01"
        assert rows["vid1"].views == 100
        assert rows["vid1"].watch_time_minutes == pytest.approx(250.5)
        assert float(rows["vid1"].estimated_revenue) == pytest.approx(1.25)
        assert rows["vid2"].estimated_revenue is None
        assert rows["vid3"].views == 0
        assert rows["vid1"].metric_payload["video_id"] == "vid1"
        assert rows["vid1"].user_id == USER
        assert rows["vid1"].job_id == JOB


class TestRetryAfterError:
    def test_errored_report_is_reprocessed_on_next_pass(self, test_db_session):
        settings = Settings(LEDGER_RETRY_BASE_MINUTES=0)
        client = FakeReportingClient(
            reports=[make_report("r1")],
            payloads={"r1": REPORT_1_CSV},
            failures={"r1": [YouTubeApiError("Backend error", status_code=500)]},
        )

        first = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB, settings=settings)

        assert first.failed == 1
        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.error
        assert "Backend error" in entry.error_message
        assert entry.attempt_count == 1
        assert entry.next_attempt_at is not None
        assert _metric_count(test_db_session) == 0

        second = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB, settings=settings)

        assert second.ingested == 1
        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.parsed
        assert entry.error_message is None
        assert entry.attempt_count == 2
        assert _metric_count(test_db_session) == 3

    def test_backoff_defers_the_retry(self, test_db_session):
        client = FakeReportingClient(
            reports=[make_report("r1")],
            payloads={"r1": REPORT_1_CSV},
            failures={"r1": [YouTubeApiError("Backend error", status_code=500)]},
        )

        ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)
        second = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)

        assert second.skipped == 1
        assert client.downloads == ["r1"]

        # Once the backoff has elapsed the report is claimable again
        later = datetime.utcnow() + timedelta(hours=1)
        outcome, rows = ingest_report_file(
            test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), now=later,
        )
        assert outcome == IngestOutcome.ingested
        assert rows == 3

    def test_partial_write_is_replaced_on_retry(self, test_db_session):
        settings = Settings(LEDGER_RETRY_BASE_MINUTES=0)
        client = FakeReportingClient(reports=[make_report("r1")], payloads={"r1": REPORT_1_CSV})

        with patch(
            "ytreporting.services.report_ingestion_service.insert_daily_metrics",
            side_effect=MetricsWriteError("Persisting daily metrics failed at row 500"),
        ):
            with pytest.raises(MetricsWriteError):
                ingest_report_file(
                    test_db_session, client, user_id=USER, job_id=JOB,
                    report=make_report("r1"), settings=settings,
                )

        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.error
        assert entry.error_message == "Persisting daily metrics failed at row 500"
        # Checksum is recorded before parsing
        assert entry.file_checksum == hashlib.sha256(REPORT_1_CSV).hexdigest()

        outcome, rows = ingest_report_file(
            test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), settings=settings,
        )

        assert outcome == IngestOutcome.ingested
        assert _metric_count(test_db_session) == 3

    def test_download_failure_after_claim_marks_error(self, test_db_session):
        client = FakeReportingClient(
            reports=[make_report("r1")],
            failures={"r1": [YouTubeApiError("Not found", status_code=404)]},
        )

        with pytest.raises(YouTubeApiError):
            ingest_report_file(test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"))

        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.error
        assert entry.file_checksum is None


class TestBoundedRetry:
    def test_exhausted_entry_is_skipped_until_reset(self, test_db_session):
        settings = Settings(LEDGER_MAX_ATTEMPTS=2, LEDGER_RETRY_BASE_MINUTES=0)
        client = FakeReportingClient(
            reports=[make_report("r1")],
            payloads={"r1": REPORT_1_CSV},
            failures={"r1": [
                YouTubeApiError("boom 1", status_code=500),
                YouTubeApiError("boom 2", status_code=500),
            ]},
        )

        for _ in range(2):
            ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB, settings=settings)

        entry = _entry(test_db_session, "r1")
        assert entry.attempt_count == 2
        assert ledger.is_exhausted(entry, settings)

        outcome, _ = ingest_report_file(
            test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), settings=settings,
        )
        assert outcome == IngestOutcome.exhausted
        assert client.downloads == ["r1", "r1"]

        ledger.reset_ledger_entry(test_db_session, entry.id)
        outcome, rows = ingest_report_file(
            test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), settings=settings,
        )

        assert outcome == IngestOutcome.ingested
        assert rows == 3
        assert _entry(test_db_session, "r1").status == ReportFileStatusEnum.parsed

    def test_reset_leaves_parsed_entries_alone(self, test_db_session):
        client = FakeReportingClient(reports=[make_report("r1")], payloads={"r1": REPORT_1_CSV})
        ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)
        entry = _entry(test_db_session, "r1")

        reset = ledger.reset_ledger_entry(test_db_session, entry.id)

        assert reset.status == ReportFileStatusEnum.parsed
        assert reset.attempt_count == 1

    def test_backoff_doubles_and_is_capped(self):
        settings = Settings(LEDGER_RETRY_BASE_MINUTES=30, LEDGER_RETRY_MAX_MINUTES=24 * 60)
        now = datetime(2024, 5, 1, 12, 0)

        assert ledger.compute_next_attempt_at(1, now, settings) == now + timedelta(minutes=30)
        assert ledger.compute_next_attempt_at(3, now, settings) == now + timedelta(minutes=120)
        assert ledger.compute_next_attempt_at(10, now, settings) == now + timedelta(hours=24)


class TestClaim:
    def test_second_claim_is_refused_while_pending(self, file_db):
        db1 = file_db()
        db2 = file_db()
        try:
            first = ledger.claim_report_file(db1, user_id=USER, job_id=JOB, report_id="r1")
            second = ledger.claim_report_file(db2, user_id=USER, job_id=JOB, report_id="r1")

            assert first is not None
            assert second is None
        finally:
            db1.close()
            db2.close()

    def test_stale_pending_claim_can_be_taken_over(self, test_db_session):
        first = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r1")

        after_lease = datetime.utcnow() + timedelta(minutes=31)
        second = ledger.claim_report_file(
            test_db_session, user_id=USER, job_id=JOB, report_id="r1", now=after_lease,
        )

        assert second == first
        assert _entry(test_db_session, "r1").attempt_count == 2

    def test_parsed_entry_is_never_claimed(self, test_db_session):
        entry_id = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r1")
        ledger.mark_parsed(test_db_session, entry_id)

        far_future = datetime.utcnow() + timedelta(days=365)
        assert ledger.claim_report_file(
            test_db_session, user_id=USER, job_id=JOB, report_id="r1", now=far_future,
        ) is None

    def test_list_ledger_entries_filters_by_status(self, test_db_session):
        ok = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r1")
        ledger.mark_parsed(test_db_session, ok)
        bad = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r2")
        ledger.mark_error(test_db_session, bad, RuntimeError("bad csv"))

        errors = ledger.list_ledger_entries(test_db_session, USER, JOB, status=ReportFileStatusEnum.error)

        assert [e.report_id for e in errors] == ["r2"]
        assert len(ledger.list_ledger_entries(test_db_session, USER, JOB)) == 2


def test_authentication_failure_aborts_remaining_reports(test_db_session):
    client = FakeReportingClient(
        reports=[make_report("r1"), make_report("r2")],
        payloads={"r1": REPORT_1_CSV, "r2": REPORT_2_CSV},
        failures={"r1": [YouTubeAuthenticationError("YouTube API authentication failed (401)")]},
    )

    result = ingest_reports_for_job(test_db_session, client, user_id=USER, job_id=JOB)

    assert result.aborted is True
    assert result.failed == 1
    assert client.downloads == ["r1"]
    assert _entry(test_db_session, "r1").status == ReportFileStatusEnum.error
    assert _entry(test_db_session, "r2") is None


class TestAbandonedClaims:
    """A file that takes the worker down every time must still run out of attempts."""

    def test_lease_expired_claims_are_bounded_by_max_attempts(self, test_db_session):
        start = datetime(2024, 5, 1, 12, 0)
        lease = timedelta(minutes=31)

        claims = [
            ledger.claim_report_file(
                test_db_session, user_id=USER, job_id=JOB, report_id="r1", now=start + lease * i,
            )
            for i in range(6)
        ]

        assert all(c is not None for c in claims[:5])
        assert claims[5] is None
        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.pending
        assert entry.attempt_count == 5

    def test_exhausted_abandoned_entry_is_parked_until_reset(self, test_db_session):
        start = datetime(2024, 5, 1, 12, 0)
        lease = timedelta(minutes=31)
        for i in range(5):
            ledger.claim_report_file(
                test_db_session, user_id=USER, job_id=JOB, report_id="r1", now=start + lease * i,
            )
        client = FakeReportingClient(reports=[make_report("r1")], payloads={"r1": REPORT_1_CSV})

        with patch("ytreporting.services.ingestion_ledger.capture_message") as mock_capture:
            outcome, rows = ingest_report_file(
                test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"),
                now=start + lease * 6,
            )

        assert outcome == IngestOutcome.exhausted
        assert rows == 0
        assert client.downloads == []
        mock_capture.assert_called_once()
        entry = _entry(test_db_session, "r1")
        assert entry.status == ReportFileStatusEnum.error
        assert ledger.is_exhausted(entry)

        ledger.reset_ledger_entry(test_db_session, entry.id)
        outcome, rows = ingest_report_file(
            test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"),
            now=start + lease * 7,
        )

        assert outcome == IngestOutcome.ingested
        assert rows == 3

    def test_live_claim_at_last_attempt_is_not_expired(self, test_db_session):
        start = datetime(2024, 5, 1, 12, 0)
        lease = timedelta(minutes=31)
        for i in range(5):
            ledger.claim_report_file(
                test_db_session, user_id=USER, job_id=JOB, report_id="r1", now=start + lease * i,
            )
        entry = _entry(test_db_session, "r1")

        assert ledger.expire_abandoned_claim(
            test_db_session, entry.id, now=start + lease * 4 + timedelta(minutes=5),
        ) is False
        assert _entry(test_db_session, "r1").status == ReportFileStatusEnum.pending


class TestExhaustionReporting:
    def test_final_failed_attempt_is_sent_to_sentry(self, test_db_session):
        settings = Settings(LEDGER_MAX_ATTEMPTS=1)
        entry_id = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r1")

        with patch("ytreporting.services.ingestion_ledger.capture_message") as mock_capture:
            ledger.mark_error(test_db_session, entry_id, RuntimeError("bad csv"), settings=settings)

        mock_capture.assert_called_once()
        assert mock_capture.call_args.kwargs["level"] == "error"
        assert mock_capture.call_args.kwargs["extra"]["error"] == "bad csv"

    def test_earlier_failures_are_not_reported(self, test_db_session):
        entry_id = ledger.claim_report_file(test_db_session, user_id=USER, job_id=JOB, report_id="r1")

        with patch("ytreporting.services.ingestion_ledger.capture_message") as mock_capture:
            ledger.mark_error(test_db_session, entry_id, RuntimeError("bad csv"))

        mock_capture.assert_not_called()


class TestInjectedClock:
    def test_parsed_entry_uses_injected_time(self, test_db_session):
        now = datetime(2024, 5, 3, 8, 0)
        client = FakeReportingClient(reports=[make_report("r1")], payloads={"r1": REPORT_1_CSV})

        ingest_report_file(test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), now=now)

        entry = _entry(test_db_session, "r1")
        assert entry.claimed_at == now
        assert entry.processed_at == now

    def test_retry_is_scheduled_from_injected_time(self, test_db_session):
        now = datetime(2024, 5, 3, 8, 0)
        client = FakeReportingClient(
            reports=[make_report("r1")],
            payloads={"r1": REPORT_1_CSV},
            failures={"r1": [YouTubeApiError("Backend error", status_code=500)]},
        )

        with pytest.raises(YouTubeApiError):
            ingest_report_file(test_db_session, client, user_id=USER, job_id=JOB, report=make_report("r1"), now=now)

        entry = _entry(test_db_session, "r1")
        assert entry.claimed_at == now
        assert entry.next_attempt_at == now + timedelta(minutes=30)
