"""
Client for the allocation API.

Used by the scheduler to trigger passes and by delivery integrations to
read the current allocation.
"""

import os
import logging
from datetime import datetime
from typing import Optional

import httpx

from dynamic_allocation.allocation.models import BudgetAllocationOutput
from dynamic_allocation.allocation.serialization import ReallocationRequest, ReallocationResponse
from dynamic_allocation.core.errors import CampaignNotFound, InvalidParameters, UpstreamUnavailable

logger = logging.getLogger(__name__)


class AllocationServiceClient:
    """
    Client for the allocation API.

    Usage:
        with AllocationServiceClient("http://allocation:8000") as client:
            response = client.reallocate("campaign-1")
            output = client.get_allocation("campaign-1")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Parameters
        ----------
        base_url : str, optional
            Base URL of the API. Defaults to ALLOCATION_API_URL env var or localhost.
        timeout : float
            Request timeout in seconds.
        transport : httpx.BaseTransport, optional
            Custom transport (tests pass an httpx.MockTransport).
        """
        self.base_url = base_url or os.getenv("ALLOCATION_API_URL", "http://localhost:8000")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self._client.close()

    def close(self):
        """Close the client."""
        self._client.close()

    def health_check(self) -> bool:
        """
        Check if the API is healthy.

        Returns
        -------
        bool
            True if healthy, False otherwise.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def reallocate(self, campaign_id: str, period_start: Optional[datetime] = None) -> ReallocationResponse:
        """
        Trigger the due allocation pass for a campaign.

        Parameters
        ----------
        campaign_id : str
            Campaign to allocate.
        period_start : datetime, optional
            Period the caller believes is due.

        Returns
        -------
        ReallocationResponse
            Pass status and the current per-node results.
        """
        request = ReallocationRequest(campaign_id=campaign_id, period_start=period_start)
        response = self._send("POST", f"/campaigns/{campaign_id}/reallocate", json=request.to_wire())
        return ReallocationResponse.model_validate(response.json())

    def get_allocation(self, campaign_id: str) -> Optional[BudgetAllocationOutput]:
        """Current allocation for a campaign, or None if none was computed yet."""
        try:
            response = self._send("GET", f"/campaigns/{campaign_id}/allocation")
        except CampaignNotFound:
            return None
        return ReallocationResponse.model_validate(response.json()).to_output()

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Allocation API unreachable at {self.base_url}: {e}") from e

        if response.status_code == 404:
            raise CampaignNotFound(url.split("/")[2])
        if response.status_code == 422:
            body = response.json()
            errors = body.get("errors") or []
            raise InvalidParameters(str(body.get("detail", "Invalid request")), errors)
        if response.status_code == 503:
            raise UpstreamUnavailable(str(response.json().get("detail", "Service unavailable")))
        response.raise_for_status()
        return response


def get_client(base_url: Optional[str] = None) -> AllocationServiceClient:
    """
    Get a client instance.

    Parameters
    ----------
    base_url : str, optional
        API URL. Uses ALLOCATION_API_URL env var if not provided.

    Returns
    -------
    AllocationServiceClient
        Client instance.
    """
    return AllocationServiceClient(base_url)
