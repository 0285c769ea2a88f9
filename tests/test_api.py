"""Tests for ringstreak.api.service — lookup and ingest endpoints over ASGITransport."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from ringstreak import __version__
from ringstreak.api import service
from ringstreak.api.service import IngestCallRequest, app
from ringstreak.crm.client import StreakAuthError
from ringstreak.crm.models import LookupResponse, MatchLinks, MatchResult, Person, Record
from ringstreak.events.calls import PopGate


def _response(query: str = "5551234567") -> LookupResponse:
    return LookupResponse(
        query=query,
        normalized="+15551234567",
        matches=(
            MatchResult(
                score=2,
                person=Person(key="c1", name="Ada Lovelace"),
                record=Record(key="b1", name="Kitchen reno", stage_name="Proposal"),
                links=MatchLinks("https://www.streak.com/people/c1", "https://www.streak.com/p/b1"),
            ),
        ),
    )


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.resolve = AsyncMock(return_value=_response())
    return engine


@pytest_asyncio.fixture
async def test_client(clean_env, mock_engine):
    """Async HTTP client wrapping the app with a scripted engine."""
    service.engine = mock_engine
    service.gate = PopGate(15.0)
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    service.engine = None
    service.gate = None


class TestIngestCallRequest:
    def test_aliases(self):
        req = IngestCallRequest.model_validate({"from": "+1555", "to": "+1999", "callId": "s-1"})
        assert req.from_number == "+1555"
        assert req.to_number == "+1999"
        assert req.call_id == "s-1"
        assert req.direction == "inbound"

    def test_unknown_fields_ignored(self):
        req = IngestCallRequest.model_validate({"from": "+1555", "to": "+1999", "timestamp": 1700000000000})
        assert not hasattr(req, "timestamp")

    def test_field_names(self):
        req = IngestCallRequest(from_number="a", to_number="b", direction="outbound")
        assert req.direction == "outbound"
        assert req.call_id is None


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, test_client):
        resp = await test_client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": __version__}


class TestLookup:
    @pytest.mark.asyncio
    async def test_lookup(self, test_client, mock_engine):
        resp = await test_client.get("/lookup", params={"phone": "555-123-4567"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["normalized"] == "+15551234567"
        assert data["matches"][0]["links"]["recordLink"] == "https://www.streak.com/p/b1"
        mock_engine.resolve.assert_awaited_once_with("555-123-4567")

    @pytest.mark.asyncio
    async def test_phone_required(self, test_client):
        resp = await test_client.get("/lookup")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_auth_failure_is_502(self, test_client, mock_engine):
        mock_engine.resolve.side_effect = StreakAuthError(401, "/v1/search")
        resp = await test_client.get("/lookup", params={"phone": "5551234567"})
        assert resp.status_code == 502
        assert resp.json() == {"error": "lookup failed"}


class TestIngestCall:
    @pytest.mark.asyncio
    async def test_inbound_call(self, test_client, mock_engine):
        with patch("ringstreak.events.bus.publish") as publish:
            resp = await test_client.post(
                "/ingest/call",
                json={"direction": "inbound", "from": "+15551234567", "to": "+15550000000", "callId": "s-1"},
            )
        assert resp.status_code == 200
        data = resp.json()
        assert data["callId"] == "s-1"
        assert data["top"]["record"]["stageName"] == "Proposal"
        assert data["others"] == []
        mock_engine.resolve.assert_awaited_once_with("+15551234567")
        publish.assert_called_once()

    @pytest.mark.asyncio
    async def test_repeat_delivery_suppressed(self, test_client, mock_engine):
        body = {"from": "+15551234567", "to": "+15550000000", "callId": "s-2"}
        with patch("ringstreak.events.bus.publish"):
            first = await test_client.post("/ingest/call", json=body)
            second = await test_client.post("/ingest/call", json=body)
        assert first.json()["top"] is not None
        assert second.json() == {"suppressed": True, "callId": "s-2"}
        assert mock_engine.resolve.await_count == 1

    @pytest.mark.asyncio
    async def test_secret_required_when_configured(self, test_client, monkeypatch):
        monkeypatch.setenv("RINGSTREAK_SHARED_SECRET", "hunter2")
        body = {"from": "+15551234567", "to": "+15550000000"}
        with patch("ringstreak.events.bus.publish"):
            missing = await test_client.post("/ingest/call", json=body)
            wrong = await test_client.post("/ingest/call", json=body, headers={"x-ringstreak-secret": "nope"})
            right = await test_client.post("/ingest/call", json=body, headers={"x-ringstreak-secret": "hunter2"})
        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200

    @pytest.mark.asyncio
    async def test_auth_failure_is_502(self, test_client, mock_engine):
        mock_engine.resolve.side_effect = StreakAuthError(403, "/v1/search")
        with patch("ringstreak.events.bus.publish") as publish:
            resp = await test_client.post("/ingest/call", json={"from": "+15551234567", "to": "+1"})
        assert resp.status_code == 502
        publish.assert_not_called()


class TestRecentCalls:
    @pytest.mark.asyncio
    async def test_recent(self, test_client):
        entries = [{"id": "2-0", "payload": {"callId": "s-2"}}, {"id": "1-0", "payload": {"callId": "s-1"}}]
        with patch("ringstreak.events.bus.read_recent", return_value=entries) as read_recent:
            resp = await test_client.get("/calls/recent", params={"count": 2})
        assert resp.json() == {"calls": [{"callId": "s-2"}, {"callId": "s-1"}]}
        read_recent.assert_called_once_with("calls", count=2)

    @pytest.mark.asyncio
    async def test_count_bounds(self, test_client):
        resp = await test_client.get("/calls/recent", params={"count": 0})
        assert resp.status_code == 422
