"""
Call ingestion — turns a telephony call event into a published popup payload.

A ringing call produces several webhook deliveries (setup, proceeding,
ringing...). PopGate keeps one resolution per call session inside a short
cooldown window.

Usage:
    gate = PopGate(cooldown_seconds=15)
    payload = await handle_call(CallEvent("inbound", "+15551234567", "+15559876543", "s-1"), engine, gate)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ringstreak.crm.models import LookupResponse
from ringstreak.events import bus
from ringstreak.lookup.engine import ResolutionEngine

logger = logging.getLogger(__name__)

CALLS_STREAM = "calls"
CALL_RESOLVED = "call.resolved"


@dataclass(frozen=True)
class CallEvent:
    direction: str
    from_number: str
    to_number: str
    call_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "direction", (self.direction or "inbound").strip().lower())


def counterpart_number(event: CallEvent) -> str:
    """The other party's number: who we called, or who is calling us."""
    if event.direction == "outbound":
        return event.to_number
    return event.from_number


class PopGate:
    """Per-session cooldown: a session pops once, then stays quiet until the cooldown expires."""

    def __init__(self, cooldown_seconds: float = 15.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._popped: dict[str, float] = {}

    def should_pop(self, session_id: str | None) -> bool:
        """True if this session has not popped within the cooldown. Records the pop."""
        if not session_id:
            return True
        now = self._clock()
        last = self._popped.get(session_id)
        if last is not None and now - last < self.cooldown_seconds:
            logger.debug("Pop gate: session %s within cooldown, skipping", session_id)
            return False
        self._popped[session_id] = now
        self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        expired = [s for s, t in self._popped.items() if now - t >= self.cooldown_seconds]
        for session_id in expired:
            del self._popped[session_id]

    def release(self, session_id: str | None) -> None:
        """Forget a session's pop so its next delivery resolves again."""
        if session_id:
            self._popped.pop(session_id, None)

    def clear(self) -> None:
        self._popped.clear()


def build_call_payload(event: CallEvent, response: LookupResponse) -> dict[str, Any]:
    """The ``{direction, from, to, callId, top, others}`` shape the popup renders."""
    top = response.top
    return {
        "direction": event.direction,
        "from": event.from_number,
        "to": event.to_number,
        "callId": event.call_id,
        "top": top.to_dict() if top else None,
        "others": [m.to_dict() for m in response.others],
    }


def _log_summary(event: CallEvent, response: LookupResponse) -> None:
    top = response.top
    if top is None:
        logger.info("No match for %s", counterpart_number(event))
    elif top.record is None:
        logger.info("Contact match %r, no box linked yet", top.person.name or top.person.key)
    else:
        stage = f" · Stage: {top.record.stage_name}" if top.record.stage_name else ""
        logger.info("%s%s", top.record.name or top.record.key, stage)
        if top.record.last_email_preview:
            logger.info("  Last email: %s", top.record.last_email_preview)
    logger.info(
        "Call %s from=%s to=%s session=%s",
        event.direction,
        event.from_number,
        event.to_number,
        event.call_id,
    )


async def handle_call(
    event: CallEvent,
    engine: ResolutionEngine,
    gate: PopGate,
    publish: Callable[..., str | None] | None = None,
) -> dict[str, Any] | None:
    """Resolve the counterpart of a call and publish the popup payload.

    Returns the payload, or None if the pop gate suppressed this delivery.
    Lookup failures (e.g. rejected CRM credentials) propagate to the caller
    and release the session, so a redelivery of the same call tries again.
    """
    if not gate.should_pop(event.call_id):
        return None

    try:
        response = await engine.resolve(counterpart_number(event))
    except BaseException:
        gate.release(event.call_id)
        raise
    payload = build_call_payload(event, response)
    publish = publish or bus.publish
    publish(CALLS_STREAM, CALL_RESOLVED, payload, source="ingest", correlation_id=event.call_id)
    _log_summary(event, response)
    return payload
