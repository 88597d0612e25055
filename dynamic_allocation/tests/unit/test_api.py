"""
Tests for api/ - the FastAPI server and the httpx client.
"""

import json
import pytest
import httpx
from dataclasses import replace
from decimal import Decimal
from fastapi.testclient import TestClient

from dynamic_allocation.api.client import AllocationServiceClient
from dynamic_allocation.api.server import create_app
from dynamic_allocation.core.errors import CampaignNotFound, InvalidParameters, UpstreamUnavailable


@pytest.fixture
def app(controller):
    return create_app(controller)


@pytest.fixture
def client(app):
    return TestClient(app)


# =============================================================================
# Server
# =============================================================================

class TestServer:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["campaignsSeen"] == 0
        assert body["timestamp"].endswith("Z")

    def test_reallocate_then_noop(self, client):
        first = client.post("/campaigns/campaign-1/reallocate")
        assert first.status_code == 200
        body = first.json()
        assert body["campaignId"] == "campaign-1"
        assert body["status"] == "Allocated"
        assert body["lastModifiedDate"] == "2024-03-01T00:00:00.000000Z"
        assert len(body["perNodeResults"]) > 0

        second = client.post("/campaigns/campaign-1/reallocate")
        assert second.json()["status"] == "NoOp"
        assert second.json()["perNodeResults"] == body["perNodeResults"]

    def test_reallocate_with_request_body(self, client):
        response = client.post(
            "/campaigns/campaign-1/reallocate",
            json={"campaignId": "campaign-1", "periodStart": "2024-03-01T00:00:00Z"},
        )
        assert response.json()["status"] == "Allocated"

    def test_body_must_match_path(self, client):
        response = client.post("/campaigns/campaign-1/reallocate", json={"campaignId": "other"})
        assert response.status_code == 422

    def test_unknown_campaign(self, client):
        response = client.post("/campaigns/missing/reallocate")
        assert response.status_code == 404
        assert "missing" in response.json()["detail"]

    def test_invalid_campaign_state(self, campaigns, snapshot, client):
        campaigns.add(replace(snapshot, remaining_budget=Decimal("99999")))

        response = client.post("/campaigns/campaign-1/reallocate")
        assert response.status_code == 422
        assert response.json()["errors"]

    def test_get_allocation(self, client):
        assert client.get("/campaigns/campaign-1/allocation").status_code == 404

        client.post("/campaigns/campaign-1/reallocate")
        response = client.get("/campaigns/campaign-1/allocation")

        assert response.status_code == 200
        assert response.json()["status"] == "InitialAllocation"
        assert response.json()["perNodeResults"]

    def test_campaign_locks_tracked(self, app, client):
        client.post("/campaigns/campaign-1/reallocate")
        assert len(app.state.locks) == 1
        assert client.get("/health").json()["campaignsSeen"] == 1


# =============================================================================
# Client
# =============================================================================

def mock_client(handler):
    return AllocationServiceClient("http://allocation.test", transport=httpx.MockTransport(handler))


@pytest.fixture
def response_body():
    return {
        "campaignId": "campaign-1",
        "status": "Allocated",
        "lastModifiedDate": "2024-03-01T00:00:00.000000Z",
        "anticipatedSpendForDay": "58.82",
        "perNodeResults": [{
            "allocationId": "n01",
            "measureSet": [1, 101],
            "periodImpressionCap": 25000,
            "periodMediaBudget": "50.00",
            "periodTotalBudget": "58.82",
            "maxBid": "2.00",
        }],
    }


class TestServiceClient:
    def test_reallocate(self, response_body):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=response_body)

        with mock_client(handler) as api:
            response = api.reallocate("campaign-1")

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/campaigns/campaign-1/reallocate"
        assert json.loads(seen[0].content)["campaignId"] == "campaign-1"
        assert response.status == "Allocated"
        assert response.per_node_results[0].period_media_budget == Decimal("50.00")

    def test_get_allocation(self, response_body):
        with mock_client(lambda request: httpx.Response(200, json=response_body)) as api:
            output = api.get_allocation("campaign-1")
        assert output.total_media_budget == Decimal("50.00")
        assert output.result_for("n01").exported

    def test_get_allocation_missing(self):
        with mock_client(lambda request: httpx.Response(404, json={"detail": "no"})) as api:
            assert api.get_allocation("campaign-1") is None

    def test_not_found_on_reallocate(self):
        with mock_client(lambda request: httpx.Response(404, json={"detail": "no"})) as api:
            with pytest.raises(CampaignNotFound) as exc_info:
                api.reallocate("campaign-9")
        assert exc_info.value.campaign_id == "campaign-9"

    def test_invalid_parameters(self):
        body = {"detail": "Invalid allocation inputs", "errors": ["margin must be in (0, 1]"]}
        with mock_client(lambda request: httpx.Response(422, json=body)) as api:
            with pytest.raises(InvalidParameters) as exc_info:
                api.reallocate("campaign-1")
        assert exc_info.value.errors == ["margin must be in (0, 1]"]

    def test_service_unavailable(self):
        with mock_client(lambda request: httpx.Response(503, json={"detail": "store down"})) as api:
            with pytest.raises(UpstreamUnavailable, match="store down"):
                api.reallocate("campaign-1")

    def test_conflict_raises_http_error(self):
        with mock_client(lambda request: httpx.Response(409, json={"detail": "conflict", "attempts": 4})) as api:
            with pytest.raises(httpx.HTTPStatusError):
                api.reallocate("campaign-1")

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with mock_client(handler) as api:
            assert api.health_check() is False
            with pytest.raises(UpstreamUnavailable):
                api.reallocate("campaign-1")

    def test_health_check(self):
        with mock_client(lambda request: httpx.Response(200, json={"status": "healthy"})) as api:
            assert api.health_check() is True

    def test_base_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("ALLOCATION_API_URL", "http://from-env:9000")
        api = AllocationServiceClient()
        assert api.base_url == "http://from-env:9000"
        api.close()
