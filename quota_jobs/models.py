"""Data models for indexing jobs, credentials and keyword tasks."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Indexing job status values."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubmissionStatus(str, Enum):
    """URL submission status values."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    INDEXED = "indexed"
    FAILED = "failed"
    QUOTA_EXCEEDED = "quota_exceeded"


class ScheduleType(str, Enum):
    """Recurrence of an indexing job."""

    ONE_TIME = "one-time"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class CredentialHealth(str, Enum):
    """Health of a credential as seen by the quota ledger."""

    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


class DeactivationReason(str, Enum):
    """Why a credential was switched off.

    Only ``QUOTA_EXHAUSTED`` is reversed by the quota reset monitor.
    """

    QUOTA_EXHAUSTED = "quota_exhausted"
    REVOKED = "revoked"


class Service(str, Enum):
    """External API a credential grants access to."""

    INDEXING = "indexing"
    RANK_DATA = "rank_data"


def derive_health(quota_used: int, quota_limit: int) -> CredentialHealth:
    """Health bucket for a usage level."""
    if quota_limit <= 0:
        return CredentialHealth.UNKNOWN
    ratio = quota_used / quota_limit
    if ratio >= 1:
        return CredentialHealth.ERROR
    if ratio >= 0.75:
        return CredentialHealth.WARNING
    return CredentialHealth.HEALTHY


class Job:
    """Represents an indexing job record."""

    def __init__(
        self,
        id: str,
        owner_id: str,
        status: JobStatus,
        name: Optional[str] = None,
        total_urls: int = 0,
        processed_urls: int = 0,
        successful_urls: int = 0,
        failed_urls: int = 0,
        progress_percentage: float = 0.0,
        locked_by: Optional[str] = None,
        locked_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        schedule_type: ScheduleType = ScheduleType.ONE_TIME,
        next_run_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.owner_id = owner_id
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.name = name
        self.total_urls = total_urls
        self.processed_urls = processed_urls
        self.successful_urls = successful_urls
        self.failed_urls = failed_urls
        self.progress_percentage = progress_percentage
        self.locked_by = locked_by
        self.locked_at = locked_at
        self.error_message = error_message
        self.schedule_type = ScheduleType(schedule_type or ScheduleType.ONE_TIME)
        self.next_run_at = next_run_at
        self.created_at = created_at
        self.started_at = started_at
        self.completed_at = completed_at
        self.updated_at = updated_at

    def progress(self) -> "JobProgress":
        """Snapshot of the job's counters."""
        return JobProgress(
            total_urls=self.total_urls,
            processed_urls=self.processed_urls,
            successful_urls=self.successful_urls,
            failed_urls=self.failed_urls,
            progress_percentage=self.progress_percentage,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "name": self.name,
            "status": self.status.value,
            "total_urls": self.total_urls,
            "processed_urls": self.processed_urls,
            "successful_urls": self.successful_urls,
            "failed_urls": self.failed_urls,
            "progress_percentage": self.progress_percentage,
            "locked_by": self.locked_by,
            "locked_at": _iso(self.locked_at),
            "error_message": self.error_message,
            "schedule_type": self.schedule_type.value,
            "next_run_at": _iso(self.next_run_at),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }


class UrlSubmission:
    """One URL belonging to an indexing job."""

    def __init__(
        self,
        id: str,
        job_id: str,
        url: str,
        status: SubmissionStatus = SubmissionStatus.PENDING,
        retry_count: int = 0,
        credential_id: Optional[str] = None,
        error_message: Optional[str] = None,
        run_number: int = 1,
        created_at: Optional[datetime] = None,
        submitted_at: Optional[datetime] = None,
    ):
        self.id = id
        self.job_id = job_id
        self.url = url
        self.status = SubmissionStatus(status)
        self.retry_count = retry_count
        self.credential_id = credential_id
        self.error_message = error_message
        self.run_number = run_number
        self.created_at = created_at
        self.submitted_at = submitted_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "job_id": str(self.job_id),
            "url": self.url,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "credential_id": str(self.credential_id) if self.credential_id else None,
            "error_message": self.error_message,
            "run_number": self.run_number,
            "created_at": _iso(self.created_at),
            "submitted_at": _iso(self.submitted_at),
        }


class Credential:
    """An API key or service-account identity with a quota allotment."""

    def __init__(
        self,
        id: str,
        service: Service,
        quota_limit: int,
        quota_used: int = 0,
        is_active: bool = False,
        owner_id: Optional[str] = None,
        name: Optional[str] = None,
        secret: Optional[str] = None,
        health_status: CredentialHealth = CredentialHealth.UNKNOWN,
        deactivation_reason: Optional[DeactivationReason] = None,
        quota_resets_at: Optional[datetime] = None,
        last_used_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.service = Service(service)
        self.quota_limit = quota_limit
        self.quota_used = quota_used
        self.is_active = is_active
        self.owner_id = owner_id
        self.name = name
        self.secret = secret
        self.health_status = CredentialHealth(health_status or CredentialHealth.UNKNOWN)
        self.deactivation_reason = (
            DeactivationReason(deactivation_reason) if deactivation_reason else None
        )
        self.quota_resets_at = quota_resets_at
        self.last_used_at = last_used_at
        self.created_at = created_at

    @property
    def remaining(self) -> int:
        return max(0, self.quota_limit - self.quota_used)

    @property
    def is_exhausted(self) -> bool:
        return self.quota_used >= self.quota_limit

    def to_dict(self) -> Dict[str, Any]:
        """Serialize without the secret."""
        return {
            "id": str(self.id),
            "service": self.service.value,
            "name": self.name,
            "owner_id": self.owner_id,
            "quota_limit": self.quota_limit,
            "quota_used": self.quota_used,
            "is_active": self.is_active,
            "health_status": self.health_status.value,
            "deactivation_reason": (
                self.deactivation_reason.value if self.deactivation_reason else None
            ),
            "quota_resets_at": _iso(self.quota_resets_at),
            "last_used_at": _iso(self.last_used_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return (
            f"Credential(id={self.id}, service={self.service.value}, "
            f"used={self.quota_used}/{self.quota_limit}, active={self.is_active})"
        )


class KeywordTask:
    """A keyword/domain/device/country tuple tracked for one owner."""

    def __init__(
        self,
        id: str,
        owner_id: str,
        keyword: str,
        domain: str,
        device_type: str = "desktop",
        country_code: str = "us",
        is_active: bool = True,
        last_check_date: Optional[date] = None,
        created_at: Optional[datetime] = None,
    ):
        self.id = id
        self.owner_id = owner_id
        self.keyword = keyword
        self.domain = domain
        self.device_type = device_type
        self.country_code = country_code
        self.is_active = is_active
        self.last_check_date = last_check_date
        self.created_at = created_at

    def is_due(self, today: date) -> bool:
        """A task is due when it has not been checked on ``today``."""
        return self.last_check_date is None or self.last_check_date != today

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "keyword": self.keyword,
            "domain": self.domain,
            "device_type": self.device_type,
            "country_code": self.country_code,
            "is_active": self.is_active,
            "last_check_date": _iso(self.last_check_date),
            "created_at": _iso(self.created_at),
        }


class RankResult(BaseModel):
    """Outcome of one rank check against the rank-data API."""

    position: Optional[int] = None
    url: Optional[str] = None
    found: bool = False
    total_results: int = 0
    units_consumed: Optional[int] = None


class JobProgress(BaseModel):
    """Counters broadcast with every job update."""

    total_urls: int = 0
    processed_urls: int = 0
    successful_urls: int = 0
    failed_urls: int = 0
    progress_percentage: float = 0.0


class JobUpdate(BaseModel):
    """Payload pushed to the progress notifier."""

    status: JobStatus
    progress: JobProgress
    current_url: Optional[str] = None
    error_message: Optional[str] = None

    model_config = {
        "use_enum_values": True,
    }


class BatchResult(BaseModel):
    """Aggregate outcome of a batched run."""

    processed: int = 0
    errors: int = 0

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(
            processed=self.processed + other.processed,
            errors=self.errors + other.errors,
        )


class RankCheckStats(BaseModel):
    """Dashboard view of today's rank-check progress."""

    total_keywords: int = 0
    pending_checks: int = 0
    checked_today: int = 0
    completion_rate: float = 0.0


class QuotaSummary(BaseModel):
    """Totals across every credential in a scope."""

    total_keys: int = 0
    active_keys: int = 0
    total_quota: int = 0
    used_quota: int = 0
    available_quota: int = 0


class QuotaHealth(BaseModel):
    """Aggregate quota health for a scope."""

    status: str
    total_quota: int = 0
    used_quota: int = 0
    remaining_quota: int = 0
    utilization_percentage: float = 0.0
    active_keys: int = 0
    exhausted_keys: int = 0
