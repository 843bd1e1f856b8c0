"""Test errors."""

from quota_jobs.errors import (
    AuthTokenError,
    JobAlreadyRunningError,
    JobNotFoundError,
    NoCredentialAvailableError,
    QuotaExhaustedError,
    QuotaJobsError,
    RemoteHttpError,
    is_quota_exhausted_message,
)


def test_quota_jobs_error():
    """Test base QuotaJobsError."""
    error = QuotaJobsError("Test error")
    assert str(error) == "Test error"
    assert isinstance(error, Exception)


def test_job_not_found_error():
    error = JobNotFoundError("abc")
    assert str(error) == "Job abc not found"
    assert error.job_id == "abc"
    assert isinstance(error, QuotaJobsError)


def test_quota_exhausted_error_default_message():
    error = QuotaExhaustedError()
    assert is_quota_exhausted_message(str(error))


def test_quota_exhausted_error_appends_marker():
    """Custom messages always carry the quota exhausted marker."""
    error = QuotaExhaustedError("HTTP 429: too many requests", credential_id="cred-1")
    assert str(error) == "HTTP 429: too many requests (quota exhausted)"
    assert error.credential_id == "cred-1"


def test_quota_exhausted_error_keeps_existing_marker():
    error = QuotaExhaustedError("Daily Quota Exhausted for key")
    assert str(error) == "Daily Quota Exhausted for key"


def test_no_credential_available_error():
    error = NoCredentialAvailableError("owner user-1")
    assert isinstance(error, QuotaExhaustedError)
    assert "owner user-1" in str(error)
    assert is_quota_exhausted_message(str(error))
    assert error.scope == "owner user-1"


def test_is_quota_exhausted_message():
    assert is_quota_exhausted_message("All keys QUOTA EXHAUSTED")
    assert not is_quota_exhausted_message("HTTP 500: server error")
    assert not is_quota_exhausted_message(None)
    assert not is_quota_exhausted_message("")


def test_remote_http_error():
    """Test RemoteHttpError."""
    error = RemoteHttpError(500, "Internal server error", response_body='{"error": "x"}')
    assert error.status_code == 500
    assert error.response_body == '{"error": "x"}'
    assert str(error) == "HTTP 500: Internal server error"


def test_other_errors_are_quota_jobs_errors():
    assert isinstance(JobAlreadyRunningError("running"), QuotaJobsError)
    assert isinstance(AuthTokenError("Invalid token"), QuotaJobsError)
