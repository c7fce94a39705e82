"""YouTube Reporting API client.

WHAT:
    Synchronous wrapper over https://youtubereporting.googleapis.com/v1:
    report types, jobs, report file listing and the two-step report download.

WHY:
    - Centralized Reporting API interaction (single source of truth)
    - Pagination handling (`nextPageToken`)
    - One failure taxonomy so callers can tell "re-authenticate" from
      "job already exists" from everything else

WHERE USED:
    - ytreporting/services/report_ingestion_service.py (list + download)
    - ytreporting/services/job_service.py (job registration, metadata refresh)

REFERENCES:
    - https://developers.google.com/youtube/reporting/v1/reference/rest
    - https://developers.google.com/youtube/reporting/v1/reports
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from ytreporting.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class YouTubeReportingError(Exception):
    """Base exception for Reporting API errors (also raised on transport failures)."""
    pass


class YouTubeAuthenticationError(YouTubeReportingError):
    """Raised when the access token is rejected (401/403)."""
    pass


class YouTubeDuplicateJobError(YouTubeReportingError):
    """Raised when a job for the report type already exists (409 / ALREADY_EXISTS)."""
    pass


class YouTubeApiError(YouTubeReportingError):
    """Any other HTTP error returned by the Reporting API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(f"YouTube API error: {message}")
        self.message = message
        self.status_code = status_code
        self.code = code
        self.reason = reason


# =============================================================================
# MODELS
# =============================================================================

class _ApiModel(BaseModel):
    # Provider uses camelCase; unknown fields are kept in `model_extra`
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ReportFile(_ApiModel):
    """One generated report file of a job (transient, never stored as-is)."""

    id: str
    job_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    create_time: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def extras(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


class ReportType(_ApiModel):
    id: str
    name: Optional[str] = None
    deprecate_time: Optional[str] = None
    system_managed: Optional[bool] = None


class ReportingJobDescriptor(_ApiModel):
    """A job as the provider describes it."""

    id: str
    report_type_id: Optional[str] = None
    name: Optional[str] = None
    create_time: Optional[str] = None
    expire_time: Optional[str] = None
    system_managed: Optional[bool] = None


class ApiErrorDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    reason: Optional[str] = None
    domain: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ApiErrorPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    message: Optional[str] = None
    status: Optional[str] = None
    details: Optional[List[ApiErrorDetail]] = None


class ApiErrorBody(BaseModel):
    """Google error envelope `{"error": {...}}`; every field optional."""

    model_config = ConfigDict(extra="allow")

    error: Optional[ApiErrorPayload] = None


# =============================================================================
# CLIENT
# =============================================================================

class YouTubeReportingClient:
    """Client for the YouTube Reporting API on behalf of one user.

    Usage:
        ```python
        with YouTubeReportingClient(access_token="ya29...") as client:
            reports = client.list_reports("job-123")
            csv_bytes = client.download_report("job-123", reports[0].id)
        ```
    """

    def __init__(
        self,
        access_token: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        if not access_token:
            raise YouTubeAuthenticationError("No Google access token available. Re-authentication required.")

        settings = get_settings()
        self.access_token = access_token
        self.base_url = (base_url or settings.YOUTUBE_REPORTING_BASE_URL).rstrip("/")
        # Only close the HTTP client when this instance created it
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def __enter__(self) -> "YouTubeReportingClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        context: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"

        try:
            response = self._http.request(method, url, headers=self._headers(), params=params, json=json)
        except httpx.RequestError as e:
            logger.error("[YOUTUBE_CLIENT] %s: transport error %s", context, e)
            raise YouTubeReportingError(f"{context}: {e}") from e

        if response.status_code >= 400:
            raise self._map_error(response, context)

        return response

    def _map_error(self, response: httpx.Response, context: str) -> YouTubeReportingError:
        """Translate an HTTP error response into the client's exception taxonomy."""
        status = response.status_code
        message = response.reason_phrase or f"HTTP {status}"
        code: Optional[int] = status
        reason: Optional[str] = None

        try:
            body = ApiErrorBody.model_validate(response.json())
        except (ValueError, ValidationError):
            body = None

        if body is not None and body.error is not None:
            message = body.error.message or message
            code = body.error.code or status
            reason = body.error.status
            if body.error.details:
                detail = body.error.details[0]
                logger.debug(
                    "[YOUTUBE_CLIENT] Error details: reason=%s domain=%s metadata=%s",
                    detail.reason, detail.domain, detail.metadata,
                )

        logger.error(
            "[YOUTUBE_CLIENT] %s: [%s] %s%s",
            context, code, message, f" ({reason})" if reason else "",
        )

        if status in (401, 403):
            return YouTubeAuthenticationError(
                f"YouTube API authentication failed ({status}): {message}"
            )

        if status == 409 or "already exists" in message.lower() or reason == "ALREADY_EXISTS":
            return YouTubeDuplicateJobError(
                "A reporting job for this report type already exists. "
                "Each report type can only have one job per channel."
            )

        return YouTubeApiError(
            message,
            status_code=status,
            code=code,
            reason=reason,
        )

    def _get_paginated(self, path: str, key: str, *, context: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_params = dict(params or {})
        while True:
            data = self._request("GET", path, context=context, params=page_params).json()
            items.extend(data.get(key) or [])
            next_token = data.get("nextPageToken")
            if not next_token:
                return items
            page_params["pageToken"] = next_token

    # -------------------------------------------------------------------------
    # Report types and jobs
    # -------------------------------------------------------------------------

    def list_report_types(self) -> List[ReportType]:
        """List report types available to the authorized channel."""
        raw = self._get_paginated("/reportTypes", "reportTypes", context="Failed to fetch report types")
        return [ReportType.model_validate(item) for item in raw]

    def list_jobs(self) -> List[ReportingJobDescriptor]:
        raw = self._get_paginated("/jobs", "jobs", context="Failed to fetch reporting jobs")
        return [ReportingJobDescriptor.model_validate(item) for item in raw]

    def get_job(self, job_id: str) -> ReportingJobDescriptor:
        data = self._request("GET", f"/jobs/{job_id}", context=f"Failed to fetch job {job_id}").json()
        return ReportingJobDescriptor.model_validate(data)

    def create_job(self, report_type_id: str, name: str) -> ReportingJobDescriptor:
        """Create a reporting job.

        Raises:
            YouTubeDuplicateJobError: A job for this report type already exists.
        """
        logger.info("[YOUTUBE_CLIENT] Creating reporting job for %s", report_type_id)
        data = self._request(
            "POST",
            "/jobs",
            context="Failed to create reporting job",
            json={"reportTypeId": report_type_id, "name": name},
        ).json()
        return ReportingJobDescriptor.model_validate(data)

    # -------------------------------------------------------------------------
    # Report files
    # -------------------------------------------------------------------------

    def list_reports(self, job_id: str) -> List[ReportFile]:
        """List report files generated for a job (empty list is valid)."""
        raw = self._get_paginated(
            f"/jobs/{job_id}/reports", "reports",
            context=f"Failed to list reports for job {job_id}",
        )
        reports = [ReportFile.model_validate(item) for item in raw]
        logger.debug("[YOUTUBE_CLIENT] %d reports available for job %s", len(reports), job_id)
        return reports

    def download_report(self, job_id: str, report_id: str) -> bytes:
        """Download the raw payload of one report file.

        Two steps: fetch the report metadata for its `downloadUrl`, then GET
        that URL with the same bearer token.

        Raises:
            YouTubeReportingError: Metadata has no download URL, or transport failed.
        """
        context = f"Failed to download report {report_id}"
        metadata = self._request(
            "GET", f"/jobs/{job_id}/reports/{report_id}", context=context,
        ).json()

        download_url = metadata.get("downloadUrl")
        if not download_url:
            raise YouTubeReportingError(f"Report download URL not found for report {report_id}")

        response = self._request("GET", download_url, context=context)
        logger.info("[YOUTUBE_CLIENT] Downloaded report %s (%d bytes)", report_id, len(response.content))
        return response.content

    def close(self) -> None:
        if self._owns_http:
            self._http.close()
