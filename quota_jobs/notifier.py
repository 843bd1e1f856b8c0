"""Progress notifications for indexing jobs."""

import asyncio
import logging
from typing import Optional, Set

import aiohttp

from quota_jobs.errors import RemoteHttpError
from quota_jobs.models import JobUpdate

logger = logging.getLogger(__name__)


class ProgressNotifier:
    """Pushes job updates to whoever is watching an owner's jobs."""

    async def broadcast_job_update(self, owner_id: str, job_id, update: JobUpdate) -> None:
        raise NotImplementedError


class LoggingProgressNotifier(ProgressNotifier):
    """Writes job updates to the log."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def broadcast_job_update(self, owner_id: str, job_id, update: JobUpdate) -> None:
        self.logger.info(
            f"Job {job_id} (owner {owner_id}): {update.status} "
            f"{update.progress.processed_urls}/{update.progress.total_urls} "
            f"({update.progress.progress_percentage:.1f}%)"
        )


class WebhookProgressNotifier(ProgressNotifier):
    """POSTs job updates as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        auth_token: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self.url = url
        self.session = session
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def broadcast_job_update(self, owner_id: str, job_id, update: JobUpdate) -> None:
        body = {
            "owner_id": owner_id,
            "job_id": str(job_id),
            "update": update.model_dump(),
        }
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["X-Quota-Jobs-Token"] = self.auth_token

        if self.session is not None:
            await self._post(self.session, body, headers)
            return

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            await self._post(session, body, headers)

    async def _post(self, session: aiohttp.ClientSession, body, headers) -> None:
        try:
            async with session.post(
                self.url, json=body, headers=headers, timeout=self.timeout
            ) as resp:
                if resp.status >= 400:
                    response_body = await resp.text()
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"Webhook rejected job update: {response_body}",
                        response_body=response_body,
                    )
        except aiohttp.ClientError as e:
            raise RemoteHttpError(status_code=0, message=f"Network error: {str(e)}") from e


async def _broadcast_and_log(
    notifier: ProgressNotifier, owner_id: str, job_id, update: JobUpdate
) -> None:
    try:
        await notifier.broadcast_job_update(owner_id, job_id, update)
    except Exception as e:
        logger.warning(f"Failed to broadcast update for job {job_id}: {e}")


def safe_broadcast(
    notifier: Optional[ProgressNotifier],
    owner_id: str,
    job_id,
    update: JobUpdate,
    pending: Set[asyncio.Task],
) -> Optional[asyncio.Task]:
    """
    Schedule a broadcast without waiting for it.

    The task is held in ``pending`` until it finishes. Delivery failures are
    logged and never reach the caller.
    """
    if notifier is None:
        return None
    task = asyncio.create_task(_broadcast_and_log(notifier, owner_id, job_id, update))
    pending.add(task)
    task.add_done_callback(pending.discard)
    return task
