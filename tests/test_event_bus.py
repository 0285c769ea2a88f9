"""Tests for ringstreak.events.bus — uses mock Redis."""

import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from ringstreak.events.bus import (
    VALID_STREAMS,
    _make_envelope,
    _stream_key,
    publish,
    read_recent,
    reset_client,
    set_redis_client,
)


@pytest.fixture(autouse=True)
def clean_redis():
    """Reset Redis client between tests."""
    reset_client()
    yield
    reset_client()


class TestStreamKey:
    def test_format(self):
        assert _stream_key("calls") == "ringstreak:events:calls"

    def test_all_valid(self):
        for stream in VALID_STREAMS:
            assert _stream_key(stream).startswith("ringstreak:events:")


class TestMakeEnvelope:
    def test_required_fields(self):
        env = _make_envelope("call.resolved", {"from": "+15551234567"}, source="ingest")
        assert env["type"] == "call.resolved"
        assert env["source"] == "ingest"
        assert env["actor"] == "ringstreak"
        assert "timestamp" in env
        assert json.loads(env["payload"]) == {"from": "+15551234567"}

    def test_correlation_id(self):
        assert _make_envelope("x", {}, correlation_id="sess-1")["correlation_id"] == "sess-1"
        assert _make_envelope("x", {})["correlation_id"] == ""


class TestPublish:
    def test_publish_with_mock_redis(self):
        mock_redis = MagicMock()
        mock_redis.xadd.return_value = "1700000000000-0"
        set_redis_client(mock_redis)

        msg_id = publish("calls", "call.resolved", {"top": None}, source="ingest")

        assert msg_id == "1700000000000-0"
        key, envelope = mock_redis.xadd.call_args.args
        assert key == "ringstreak:events:calls"
        assert envelope["type"] == "call.resolved"
        assert mock_redis.xadd.call_args.kwargs["approximate"] is True

    def test_unknown_stream_still_published(self):
        mock_redis = MagicMock()
        mock_redis.xadd.return_value = "1-0"
        set_redis_client(mock_redis)
        assert publish("elsewhere", "x", {}) == "1-0"

    @patch("ringstreak.events.bus.EVENT_BUS_ENABLED", False)
    def test_publish_disabled(self):
        mock_redis = MagicMock()
        set_redis_client(mock_redis)
        assert publish("calls", "x", {}) is None
        mock_redis.xadd.assert_not_called()

    def test_redis_error_returns_none(self):
        mock_redis = MagicMock()
        mock_redis.xadd.side_effect = redis.ConnectionError("gone")
        set_redis_client(mock_redis)
        assert publish("calls", "x", {}) is None

    def test_unreachable_redis(self):
        with patch("ringstreak.events.bus.redis.Redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = redis.ConnectionError("refused")
            assert publish("calls", "x", {}) is None


class TestReadRecent:
    def test_parses_entries(self):
        mock_redis = MagicMock()
        mock_redis.xrevrange.return_value = [
            (
                "2-0",
                {
                    "timestamp": "2024-01-01T00:00:00+00:00",
                    "type": "call.resolved",
                    "source": "ingest",
                    "actor": "ringstreak",
                    "payload": json.dumps({"callId": "s-2"}),
                    "correlation_id": "s-2",
                },
            )
        ]
        set_redis_client(mock_redis)

        entries = read_recent("calls", count=1)

        assert entries[0]["id"] == "2-0"
        assert entries[0]["payload"] == {"callId": "s-2"}
        mock_redis.xrevrange.assert_called_once_with("ringstreak:events:calls", count=1)

    def test_error_is_empty(self):
        mock_redis = MagicMock()
        mock_redis.xrevrange.side_effect = redis.TimeoutError()
        set_redis_client(mock_redis)
        assert read_recent("calls") == []
