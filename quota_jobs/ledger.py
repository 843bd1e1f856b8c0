"""Quota accounting for credentials."""

import logging
from typing import Optional
from uuid import UUID

from quota_jobs.models import Credential, utcnow
from quota_jobs.store import QuotaJobsStore


class QuotaLedger:
    """Records how many quota units each credential has consumed."""

    def __init__(self, store: QuotaJobsStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    async def record_usage(
        self, credential_id: UUID, units: int, successful: bool = True
    ) -> Credential:
        """
        Charge ``units`` against a credential.

        The increment is a single atomic update, so concurrent callers never
        lose each other's usage. The per-day usage row is upserted as well.
        """
        if units < 0:
            raise ValueError(f"units must not be negative, got {units}")

        now = utcnow()
        credential = await self.store.increment_credential_usage(credential_id, units, now)
        await self.store.record_daily_usage(credential_id, now.date(), units, successful, now)

        self.logger.debug(
            f"Charged {units} units to credential {credential_id} "
            f"({credential.quota_used}/{credential.quota_limit})"
        )
        return credential

    @staticmethod
    def is_exhausted(credential: Credential) -> bool:
        return credential.is_exhausted
