"""Configuration for the quota jobs engine."""

import os
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"Invalid number in {name}: {raw!r}") from e


class QuotaJobsConfig:
    """Configuration object for the indexing and rank-check workers."""

    def __init__(
        self,
        db_dsn: str,
        indexing_api_url: str = "https://indexing.googleapis.com/v3/urlNotifications:publish",
        rank_api_url: str = "https://api.firecrawl.dev/v2/search",
        ops_auth_token: Optional[str] = None,
        notifier_webhook_url: Optional[str] = None,
        http_timeout_seconds: float = 30.0,
        indexing_batch_size: int = 10,
        indexing_batch_delay_seconds: float = 1.0,
        indexing_request_cost: int = 1,
        rank_batch_size: int = 5,
        rank_batch_delay_seconds: float = 2.0,
        rank_owner_delay_seconds: float = 5.0,
        rank_request_cost: int = 10,
        reactivation_usage_threshold: int = 10,
        lock_ttl_seconds: int = 3600,
        sweep_lock_ttl_seconds: int = 900,
        job_monitor_batch_limit: int = 5,
        reset_timezone: str = "America/Los_Angeles",
    ):
        self.db_dsn = db_dsn
        self.indexing_api_url = indexing_api_url
        self.rank_api_url = rank_api_url
        self.ops_auth_token = ops_auth_token
        self.notifier_webhook_url = notifier_webhook_url
        self.http_timeout_seconds = http_timeout_seconds
        self.indexing_batch_size = indexing_batch_size
        self.indexing_batch_delay_seconds = indexing_batch_delay_seconds
        self.indexing_request_cost = indexing_request_cost
        self.rank_batch_size = rank_batch_size
        self.rank_batch_delay_seconds = rank_batch_delay_seconds
        self.rank_owner_delay_seconds = rank_owner_delay_seconds
        self.rank_request_cost = rank_request_cost
        self.reactivation_usage_threshold = reactivation_usage_threshold
        self.lock_ttl_seconds = lock_ttl_seconds
        self.sweep_lock_ttl_seconds = sweep_lock_ttl_seconds
        self.job_monitor_batch_limit = job_monitor_batch_limit
        self.reset_timezone = reset_timezone

    @classmethod
    def from_env(cls) -> "QuotaJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("QUOTA_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("QUOTA_JOBS_DB_DSN environment variable is required")

        defaults = cls(db_dsn=db_dsn)

        return cls(
            db_dsn=db_dsn,
            indexing_api_url=os.getenv(
                "QUOTA_JOBS_INDEXING_API_URL", defaults.indexing_api_url
            ),
            rank_api_url=os.getenv("QUOTA_JOBS_RANK_API_URL", defaults.rank_api_url),
            ops_auth_token=os.getenv("QUOTA_JOBS_OPS_AUTH_TOKEN"),
            notifier_webhook_url=os.getenv("QUOTA_JOBS_NOTIFIER_WEBHOOK_URL"),
            http_timeout_seconds=_float_env(
                "QUOTA_JOBS_HTTP_TIMEOUT_SECONDS", defaults.http_timeout_seconds
            ),
            indexing_batch_size=_int_env(
                "QUOTA_JOBS_INDEXING_BATCH_SIZE", defaults.indexing_batch_size
            ),
            indexing_batch_delay_seconds=_float_env(
                "QUOTA_JOBS_INDEXING_BATCH_DELAY_SECONDS",
                defaults.indexing_batch_delay_seconds,
            ),
            indexing_request_cost=_int_env(
                "QUOTA_JOBS_INDEXING_REQUEST_COST", defaults.indexing_request_cost
            ),
            rank_batch_size=_int_env(
                "QUOTA_JOBS_RANK_BATCH_SIZE", defaults.rank_batch_size
            ),
            rank_batch_delay_seconds=_float_env(
                "QUOTA_JOBS_RANK_BATCH_DELAY_SECONDS", defaults.rank_batch_delay_seconds
            ),
            rank_owner_delay_seconds=_float_env(
                "QUOTA_JOBS_RANK_OWNER_DELAY_SECONDS", defaults.rank_owner_delay_seconds
            ),
            rank_request_cost=_int_env(
                "QUOTA_JOBS_RANK_REQUEST_COST", defaults.rank_request_cost
            ),
            reactivation_usage_threshold=_int_env(
                "QUOTA_JOBS_REACTIVATION_USAGE_THRESHOLD",
                defaults.reactivation_usage_threshold,
            ),
            lock_ttl_seconds=_int_env(
                "QUOTA_JOBS_LOCK_TTL_SECONDS", defaults.lock_ttl_seconds
            ),
            sweep_lock_ttl_seconds=_int_env(
                "QUOTA_JOBS_SWEEP_LOCK_TTL_SECONDS", defaults.sweep_lock_ttl_seconds
            ),
            job_monitor_batch_limit=_int_env(
                "QUOTA_JOBS_JOB_MONITOR_BATCH_LIMIT", defaults.job_monitor_batch_limit
            ),
            reset_timezone=os.getenv("QUOTA_JOBS_RESET_TIMEZONE", defaults.reset_timezone),
        )
