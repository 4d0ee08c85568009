"""Quota status and administration endpoints.

Status endpoints are meant to be polled by UI banners; they never consume
admission slots.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from governor.app.api.dependencies import (
    ClientRegistryDep,
    SettingsDep,
    UpstreamGovernorDep,
)
from governor.app.core.logging import get_log_context, get_logger
from governor.app.middleware.auth import require_admin
from governor.app.middleware.quota import get_client_key
from governor.app.quota.models import StatusSnapshot

router = APIRouter(prefix="/quota", tags=["quota"])
logger = get_logger(__name__)


class QuotaStatusResponse(BaseModel):
    """Status snapshot as rendered by quota banners."""

    is_blocked: bool
    remaining_seconds: float
    requests_in_window: int
    max_requests: int
    near_limit: bool = Field(..., description="Blocked or at the warning ratio")


class AcquireResponse(BaseModel):
    admitted: bool
    retry_after_seconds: float
    remaining: int


class ExhaustionReport(BaseModel):
    """Downstream reported its quota exhausted."""

    retry_after_seconds: Optional[float] = Field(
        None, gt=0, description="Block length; defaults to the governor's block_seconds"
    )


def _status_response(snapshot: StatusSnapshot, warning_ratio: float) -> QuotaStatusResponse:
    return QuotaStatusResponse(
        **snapshot.to_dict(),
        near_limit=snapshot.is_near_limit(warning_ratio),
    )


@router.get("/status", response_model=QuotaStatusResponse)
async def client_status(
    request: Request,
    registry: ClientRegistryDep,
    settings: SettingsDep,
) -> QuotaStatusResponse:
    """Caller's own quota status."""
    snapshot = registry.status(get_client_key(request))
    return _status_response(snapshot, settings.governor_warning_ratio)


@router.post("/acquire", response_model=AcquireResponse)
async def client_acquire(request: Request, registry: ClientRegistryDep) -> AcquireResponse:
    """Try to take one slot from the caller's quota.

    A refusal is a normal 200 response with ``admitted: false``.
    """
    result = registry.get(get_client_key(request)).try_acquire()
    return AcquireResponse(**result.to_dict())


@router.get("/upstream/status", response_model=QuotaStatusResponse)
async def upstream_status(
    governor: UpstreamGovernorDep,
    settings: SettingsDep,
) -> QuotaStatusResponse:
    """Status of the shared downstream AI quota."""
    return _status_response(governor.get_status(), settings.governor_warning_ratio)


@router.post("/reset", dependencies=[Depends(require_admin)])
async def reset_clients(registry: ClientRegistryDep) -> dict:
    """Forget all per-client admissions."""
    registry.reset_all()
    return {"status": "ok"}


@router.post(
    "/upstream/reset",
    response_model=QuotaStatusResponse,
    dependencies=[Depends(require_admin)],
)
async def reset_upstream(
    governor: UpstreamGovernorDep,
    settings: SettingsDep,
) -> QuotaStatusResponse:
    """Clear the upstream governor, e.g. after the provider quota was reset."""
    governor.reset()
    return _status_response(governor.get_status(), settings.governor_warning_ratio)


@router.post(
    "/upstream/exhaustion",
    response_model=QuotaStatusResponse,
    dependencies=[Depends(require_admin)],
)
async def report_upstream_exhaustion(
    report: ExhaustionReport,
    governor: UpstreamGovernorDep,
    settings: SettingsDep,
) -> QuotaStatusResponse:
    """Engage the upstream exhaustion block from an external signal."""
    snapshot = governor.report_exhaustion(report.retry_after_seconds)
    logger.info(
        "Upstream exhaustion reported via API",
        extra=get_log_context(governor=governor.name, retry_after=report.retry_after_seconds),
    )
    return _status_response(snapshot, settings.governor_warning_ratio)
