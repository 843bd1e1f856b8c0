"""Credential selection and automatic failover."""

import asyncio
import logging
from typing import Optional
from uuid import UUID

from quota_jobs.ledger import QuotaLedger
from quota_jobs.models import (
    Credential,
    DeactivationReason,
    QuotaHealth,
    QuotaSummary,
    Service,
)
from quota_jobs.store import QuotaJobsStore

QUOTA_EXHAUSTED_NOTIFICATION = "quota_exhausted"


class CredentialScope:
    """Either the site-wide pool (``owner_id=None``) or one owner's keys."""

    def __init__(self, owner_id: Optional[str] = None):
        self.owner_id = owner_id

    @property
    def is_site_wide(self) -> bool:
        return self.owner_id is None

    def __eq__(self, other) -> bool:
        return isinstance(other, CredentialScope) and other.owner_id == self.owner_id

    def __hash__(self) -> int:
        return hash(self.owner_id)

    def __str__(self) -> str:
        return "site-wide scope" if self.is_site_wide else f"owner {self.owner_id}"

    def __repr__(self) -> str:
        return f"CredentialScope(owner_id={self.owner_id!r})"


class CredentialRotator:
    """
    Picks the credential to use for a service and fails over when it runs out.

    At most one credential per scope is active. When the active one cannot
    afford another request it is switched off with reason ``quota_exhausted``
    and the oldest standby credential (inactive, no deactivation reason) with
    enough remaining quota takes its place.
    """

    def __init__(
        self,
        store: QuotaJobsStore,
        service: Service,
        request_cost: int,
        ledger: Optional[QuotaLedger] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if request_cost < 1:
            raise ValueError(f"request_cost must be at least 1, got {request_cost}")
        self.store = store
        self.service = service
        self.request_cost = request_cost
        self.ledger = ledger or QuotaLedger(store, logger)
        self.logger = logger or logging.getLogger(__name__)
        self._failover_lock = asyncio.Lock()

    async def get_active_credential(self, scope: CredentialScope) -> Optional[Credential]:
        """Return a usable credential for ``scope``, failing over if needed."""
        async with self._failover_lock:
            credential = await self.store.get_active_credential(self.service, scope.owner_id)
            if credential is not None and credential.remaining >= self.request_cost:
                return credential

            if credential is not None:
                return await self._fail_over(credential, scope)

            successor = await self._activate_successor(scope)
            if successor is None:
                self.logger.warning(f"No {self.service.value} credential available for {scope}")
            return successor

    async def record_usage(
        self, credential_id: UUID, units: int, successful: bool = True
    ) -> Credential:
        """Charge usage and fail over as soon as the credential hits its limit."""
        credential = await self.ledger.record_usage(credential_id, units, successful)
        if self.ledger.is_exhausted(credential) and credential.is_active:
            async with self._failover_lock:
                await self._fail_over(credential, CredentialScope(credential.owner_id))
        return credential

    async def mark_exhausted(self, credential: Credential) -> Optional[Credential]:
        """Deactivate a credential the remote API reported as out of quota."""
        async with self._failover_lock:
            return await self._fail_over(credential, CredentialScope(credential.owner_id))

    async def record_failure(self, credential_id: UUID) -> Credential:
        """Count a rejected or failed call against today's usage without charging units."""
        return await self.ledger.record_usage(credential_id, 0, successful=False)

    async def available_quota(self, scope: CredentialScope) -> int:
        """
        Remaining quota of the credential the next request would use.

        Resolves through ``get_active_credential``, so an active key that can
        no longer afford a request is rotated out and a standby key is brought
        in before the amount is computed.
        """
        credential = await self.get_active_credential(scope)
        if credential is None:
            return 0
        return credential.remaining

    async def available_requests(self, scope: CredentialScope) -> int:
        """Number of requests the active credential can still afford."""
        return await self.available_quota(scope) // self.request_cost

    async def summary(self, scope: CredentialScope) -> QuotaSummary:
        credentials = await self.store.list_credentials(self.service, scope.owner_id)
        usable = [
            c for c in credentials if c.deactivation_reason != DeactivationReason.REVOKED
        ]
        total_quota = sum(c.quota_limit for c in usable)
        used_quota = sum(c.quota_used for c in usable)
        return QuotaSummary(
            total_keys=len(credentials),
            active_keys=sum(1 for c in credentials if c.is_active),
            total_quota=total_quota,
            used_quota=used_quota,
            available_quota=max(0, total_quota - used_quota),
        )

    async def check_health(self, scope: CredentialScope) -> QuotaHealth:
        """
        Aggregate health over the scope's non-revoked credentials.

        ``exhausted`` when nothing is active, ``critical`` from 90% utilization,
        ``warning`` from 75%, otherwise ``healthy``.
        """
        credentials = await self.store.list_credentials(self.service, scope.owner_id)
        usable = [
            c for c in credentials if c.deactivation_reason != DeactivationReason.REVOKED
        ]
        total_quota = sum(c.quota_limit for c in usable)
        used_quota = min(sum(c.quota_used for c in usable), total_quota)
        utilization = (used_quota / total_quota * 100) if total_quota > 0 else 0.0
        active_keys = sum(1 for c in usable if c.is_active)

        if active_keys == 0:
            status = "exhausted"
        elif utilization >= 90:
            status = "critical"
        elif utilization >= 75:
            status = "warning"
        else:
            status = "healthy"

        return QuotaHealth(
            status=status,
            total_quota=total_quota,
            used_quota=used_quota,
            remaining_quota=total_quota - used_quota,
            utilization_percentage=round(utilization, 2),
            active_keys=active_keys,
            exhausted_keys=sum(1 for c in usable if c.is_exhausted),
        )

    async def _fail_over(
        self, credential: Credential, scope: CredentialScope
    ) -> Optional[Credential]:
        # Caller holds _failover_lock.
        deactivated = await self.store.deactivate_credential(
            credential.id, DeactivationReason.QUOTA_EXHAUSTED
        )
        if deactivated:
            self.logger.warning(
                f"Credential {credential.id} exhausted "
                f"({credential.quota_used}/{credential.quota_limit}), deactivated"
            )

        # A concurrent caller may already have activated a successor.
        current = await self.store.get_active_credential(self.service, scope.owner_id)
        if current is not None and current.id != credential.id:
            return current

        successor = await self._activate_successor(scope)
        if successor is not None:
            self.logger.info(
                f"Failed over {self.service.value} credential for {scope}: "
                f"{credential.id} -> {successor.id}"
            )
            return successor

        message = (
            f"All {self.service.value} credentials for {scope} are quota exhausted"
        )
        self.logger.error(message)
        if deactivated:
            await self.store.insert_notification(
                QUOTA_EXHAUSTED_NOTIFICATION, scope.owner_id, message
            )
        return None

    async def _activate_successor(self, scope: CredentialScope) -> Optional[Credential]:
        candidates = await self.store.list_inactive_credentials(self.service, scope.owner_id)
        for candidate in candidates:
            if candidate.remaining < self.request_cost:
                continue
            if await self.store.activate_credential(candidate.id):
                candidate.is_active = True
                candidate.deactivation_reason = None
                self.logger.info(f"Activated credential {candidate.id} for {scope}")
                return candidate
        return None
