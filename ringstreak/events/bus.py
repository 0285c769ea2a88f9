"""
RingStreak event bus — Redis Streams publisher for resolved calls.

The popup (or any other subscriber) reads the stream; this side only
publishes and offers a small catch-up read.

Streams:
  ringstreak:events:calls   — one entry per resolved call (``call.resolved``)

Envelope format:
  {
    "timestamp": "ISO 8601",
    "type": "<event_type>",
    "source": "<producing service>",
    "actor": "ringstreak",
    "payload": "<JSON string>",
    "correlation_id": "<call session id, if any>"
  }

Usage:
    from ringstreak.events.bus import publish, read_recent

    msg_id = publish("calls", "call.resolved", payload, source="ingest", correlation_id=call_id)
    latest = read_recent("calls", count=5)
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime

import redis

logger = logging.getLogger(__name__)

# Feature flag: disable to run without Redis
EVENT_BUS_ENABLED = os.environ.get("EVENT_BUS_ENABLED", "true").lower() in (
    "true",
    "1",
    "yes",
)

STREAM_PREFIX = "ringstreak:events:"

VALID_STREAMS = {"calls"}

# Max stream length per stream (circular buffer)
MAXLEN = int(os.environ.get("EVENT_BUS_MAXLEN", "1000"))

# Redis connection singleton
_redis_client = None


def _redis_url() -> str:
    url = os.environ.get("REDIS_URL")
    if url:
        return url
    from ringstreak.config import get_config

    return get_config().redis.url


def _get_redis():
    """Get or create Redis connection. Returns None on failure."""
    global _redis_client
    if _redis_client is not None:
        try:
            _redis_client.ping()
            return _redis_client
        except redis.RedisError:
            _redis_client = None

    try:
        _redis_client = redis.Redis.from_url(_redis_url(), decode_responses=True)
        _redis_client.ping()
        return _redis_client
    except redis.RedisError as e:
        logger.warning("Event bus: Redis connection failed: %s", e)
        _redis_client = None
        return None


def set_redis_client(client):
    """Override Redis client for testing."""
    global _redis_client
    _redis_client = client


def reset_client():
    """Reset the Redis client singleton."""
    global _redis_client
    _redis_client = None


def _stream_key(stream: str) -> str:
    return f"{STREAM_PREFIX}{stream}"


def _make_envelope(
    event_type: str,
    payload: dict,
    *,
    source: str = "unknown",
    actor: str = "ringstreak",
    correlation_id: str | None = None,
) -> dict[str, str]:
    """Create a standardized event envelope for Redis Streams."""
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "type": event_type,
        "source": source,
        "actor": actor,
        "payload": json.dumps(payload) if isinstance(payload, dict) else str(payload),
        "correlation_id": correlation_id or "",
    }


def _parse_entry(msg_id: str, fields: dict) -> dict:
    return {
        "id": msg_id,
        "timestamp": fields.get("timestamp", ""),
        "type": fields.get("type", ""),
        "source": fields.get("source", ""),
        "actor": fields.get("actor", ""),
        "payload": json.loads(fields.get("payload", "{}")),
        "correlation_id": fields.get("correlation_id", ""),
    }


def publish(
    stream: str,
    event_type: str,
    payload: dict,
    *,
    source: str = "unknown",
    actor: str = "ringstreak",
    correlation_id: str | None = None,
) -> str | None:
    """Publish an event to a Redis Stream.

    Returns the stream message ID, or None when the bus is disabled or
    Redis is unavailable. Never raises; a call popup that cannot be
    delivered must not break the lookup that produced it.
    """
    if not EVENT_BUS_ENABLED:
        return None

    if stream not in VALID_STREAMS:
        logger.warning("Event bus: stream '%s' not in %s, publishing anyway", stream, VALID_STREAMS)

    try:
        r = _get_redis()
        if r is None:
            return None
        envelope = _make_envelope(
            event_type, payload, source=source, actor=actor, correlation_id=correlation_id
        )
        msg_id: str | None = r.xadd(_stream_key(stream), envelope, maxlen=MAXLEN, approximate=True)
        return msg_id
    except (redis.RedisError, TypeError, ValueError) as e:
        logger.warning("Event bus publish failed: %s", e)
        return None


def read_recent(stream: str, count: int = 10) -> list[dict]:
    """Read the most recent N entries from a stream, newest first."""
    try:
        r = _get_redis()
        if r is None:
            return []
        entries = r.xrevrange(_stream_key(stream), count=count)
        return [_parse_entry(msg_id, fields) for msg_id, fields in entries]
    except (redis.RedisError, ValueError) as e:
        logger.warning("Event bus read_recent failed: %s", e)
        return []
