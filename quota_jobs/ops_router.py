"""FastAPI router for the internal operations API."""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from quota_jobs.errors import AuthTokenError, JobAlreadyRunningError
from quota_jobs.models import QuotaHealth, RankCheckStats
from quota_jobs.orchestrator import BackgroundServices

logger = logging.getLogger(__name__)


def check_auth_token(expected: Optional[str], provided: Optional[str]) -> None:
    """Raise AuthTokenError unless ``provided`` matches a configured token."""
    if expected and provided != expected:
        raise AuthTokenError("Invalid or missing auth token")


class ServiceState(BaseModel):
    """Registration and execution state of one periodic worker."""

    registered: bool
    running: bool


class StatusResponse(BaseModel):
    initialized: bool
    services: Dict[str, ServiceState]


class BackgroundServicesResponse(StatusResponse):
    uptime_seconds: float
    service_list: List[str]
    triggers: Dict[str, Dict[str, Optional[str]]]
    rank_check: Dict[str, Any]
    quota_health: Optional[QuotaHealth] = None


class TriggerResponse(BaseModel):
    """Outcome of a manual trigger."""

    triggered: str
    result: Optional[Dict[str, Any]] = None


def create_ops_router(
    services_factory: Callable[[], BackgroundServices],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the operations API.

    Args:
        services_factory: Callable that returns the BackgroundServices instance
        auth_token: Optional token required in the X-Quota-Jobs-Token header

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_services() -> BackgroundServices:
        """Dependency to get the BackgroundServices instance."""
        return services_factory()

    async def verify_auth_token(
        x_quota_jobs_token: Optional[str] = Header(None, alias="X-Quota-Jobs-Token")
    ) -> None:
        """Verify auth token if configured."""
        try:
            check_auth_token(auth_token, x_quota_jobs_token)
        except AuthTokenError as e:
            raise HTTPException(status_code=401, detail=str(e))

    @router.get("/status", response_model=StatusResponse)
    async def get_status(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        """Registration and running state of each periodic worker."""
        return StatusResponse(**services.get_status())

    @router.get("/background-services", response_model=BackgroundServicesResponse)
    async def get_background_services(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        try:
            status = await services.get_background_services_status()
            return BackgroundServicesResponse(**status)
        except Exception as e:
            logger.exception("Error loading background services status")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.get("/rank-checks/stats", response_model=RankCheckStats)
    async def get_rank_check_stats(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        try:
            return await services.rank_processor.get_processing_stats()
        except Exception as e:
            logger.exception("Error loading rank check stats")
            raise HTTPException(status_code=500, detail="Internal server error") from e

    @router.post("/rank-checks/trigger", response_model=TriggerResponse)
    async def trigger_rank_check(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        """Run a rank-check cycle now; 409 while one is already running."""
        try:
            result = await services.trigger_manual_rank_check()
        except JobAlreadyRunningError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        except Exception as e:
            logger.exception("Error running manual rank check")
            raise HTTPException(status_code=500, detail="Internal server error") from e

        return TriggerResponse(
            triggered="rank_check",
            result=result.model_dump() if result is not None else None,
        )

    @router.post("/quota-reset/trigger", response_model=TriggerResponse)
    async def trigger_quota_reset(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        try:
            result = await services.trigger_quota_reset_check()
        except Exception as e:
            logger.exception("Error running quota reset check")
            raise HTTPException(status_code=500, detail="Internal server error") from e
        return TriggerResponse(triggered="quota_reset", result=result)

    @router.post("/job-monitor/trigger", response_model=TriggerResponse)
    async def trigger_job_monitor(
        services: BackgroundServices = Depends(get_services),
        _: None = Depends(verify_auth_token),
    ):
        try:
            result = await services.trigger_job_monitor()
        except Exception as e:
            logger.exception("Error running job monitor")
            raise HTTPException(status_code=500, detail="Internal server error") from e
        return TriggerResponse(triggered="job_monitor", result=result)

    return router
