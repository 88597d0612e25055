"""
FastAPI server for scheduled reallocation requests.

Provides endpoints for:
- Running an allocation pass for a campaign
- Reading a campaign's current allocation
- Health checks
"""

from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from dynamic_allocation.allocation.lifecycle import AllocationLifecycleController, CampaignLocks
from dynamic_allocation.allocation.serialization import ReallocationRequest, ReallocationResponse
from dynamic_allocation.core.errors import (
    AllocationInvariantError,
    CampaignNotFound,
    InvalidParameters,
    PersistConflict,
    UpstreamUnavailable,
)
from dynamic_allocation.core.timing import format_timestamp

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_app(
    controller: AllocationLifecycleController,
    locks: Optional[CampaignLocks] = None,
) -> FastAPI:
    """
    Build the API around a lifecycle controller.

    Parameters
    ----------
    controller : AllocationLifecycleController
        Controller wired to the store and campaign source to serve.
    locks : CampaignLocks, optional
        Per-campaign locks; passes for one campaign are serialised.

    Returns
    -------
    FastAPI
        The application.
    """
    locks = locks or CampaignLocks()
    app = FastAPI(title="Dynamic Allocation", version="1.0.0")
    app.state.controller = controller
    app.state.locks = locks

    # ========================================================================
    # Error mapping
    # ========================================================================

    @app.exception_handler(InvalidParameters)
    async def invalid_parameters(request: Request, exc: InvalidParameters):
        return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(CampaignNotFound)
    async def campaign_not_found(request: Request, exc: CampaignNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PersistConflict)
    async def persist_conflict(request: Request, exc: PersistConflict):
        return JSONResponse(status_code=409, content={"detail": str(exc), "attempts": exc.attempts})

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable(request: Request, exc: UpstreamUnavailable):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(AllocationInvariantError)
    async def invariant_violated(request: Request, exc: AllocationInvariantError):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # ========================================================================
    # Endpoints
    # ========================================================================

    @app.get("/health")
    def health():
        """Health check."""
        return {
            "status": "healthy",
            "campaignsSeen": len(locks),
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
        }

    @app.post("/campaigns/{campaign_id}/reallocate", response_model=ReallocationResponse)
    def reallocate(campaign_id: str, request: Optional[ReallocationRequest] = None):
        """
        Run the due allocation pass for a campaign.

        The body is the scheduled request ``{campaignId, periodStart}``; an
        empty body runs whatever period is due.
        """
        if request is not None and request.campaign_id != campaign_id:
            raise HTTPException(
                status_code=422,
                detail=f"Body campaignId '{request.campaign_id}' does not match path '{campaign_id}'",
            )
        period_start = request.period_start if request is not None else None

        with locks.lock_for(campaign_id):
            result = controller.run(campaign_id, period_start=period_start)

        response = ReallocationResponse.from_output(campaign_id, result.status.value, result.output)
        return JSONResponse(content=response.to_wire())

    @app.get("/campaigns/{campaign_id}/allocation", response_model=ReallocationResponse)
    def get_allocation(campaign_id: str):
        """Current allocation for a campaign (the last persisted output)."""
        record = controller.store.get(campaign_id)
        if record is None or record.output is None:
            raise HTTPException(status_code=404, detail=f"No allocation for campaign '{campaign_id}'")

        status = "Completed" if record.completed else record.mode.value
        response = ReallocationResponse.from_output(campaign_id, status, record.output)
        return JSONResponse(content=response.to_wire())

    return app


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
