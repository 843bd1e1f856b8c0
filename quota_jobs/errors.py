"""Exception types for the quota jobs engine."""

QUOTA_EXHAUSTED_MARKER = "quota exhausted"


def is_quota_exhausted_message(message) -> bool:
    """Return True if a persisted error message denotes quota exhaustion."""
    if not message:
        return False
    return QUOTA_EXHAUSTED_MARKER in message.lower()


class QuotaJobsError(Exception):
    """Base exception for all quota jobs errors."""

    pass


class JobNotFoundError(QuotaJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class QuotaExhaustedError(QuotaJobsError):
    """Raised when an external API quota is used up.

    The message always carries the ``quota exhausted`` marker so that the
    quota reset monitor can recognise jobs that failed for this reason.
    """

    def __init__(self, message: str = None, credential_id=None):
        self.credential_id = credential_id
        if message is None:
            message = "API quota exhausted"
        elif not is_quota_exhausted_message(message):
            message = f"{message} ({QUOTA_EXHAUSTED_MARKER})"
        super().__init__(message)


class NoCredentialAvailableError(QuotaExhaustedError):
    """Raised when no credential with remaining quota exists for a scope."""

    def __init__(self, scope: str, message: str = None):
        self.scope = scope
        if message is None:
            message = (
                f"No available credential for {scope}: all credentials "
                f"{QUOTA_EXHAUSTED_MARKER} or inactive"
            )
        super().__init__(message)


class RemoteHttpError(QuotaJobsError):
    """Raised when a request to an external API fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")


class JobAlreadyRunningError(QuotaJobsError):
    """Raised when a manual trigger hits a worker that is already executing."""

    pass


class AuthTokenError(QuotaJobsError):
    """Raised when the operations token is missing or invalid."""

    pass
