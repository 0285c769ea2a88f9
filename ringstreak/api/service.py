"""
RingStreak lookup service: FastAPI app that the telephony side calls.

Start:
  ringstreak serve
  # or
  uvicorn ringstreak.api.service:app --host 0.0.0.0 --port 8081
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ringstreak import __version__
from ringstreak.config import get_config
from ringstreak.crm.client import StreakAuthError, StreakClient
from ringstreak.crm.enrichment import StageCache
from ringstreak.events import bus
from ringstreak.events.calls import CALLS_STREAM, CallEvent, PopGate, handle_call
from ringstreak.lookup.engine import ResolutionEngine

logger = logging.getLogger(__name__)

# Process-wide collaborators, created in lifespan; tests may assign their own.
client: StreakClient | None = None
engine: ResolutionEngine | None = None
gate: PopGate | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global client, engine, gate
    cfg = get_config()
    owned = None
    if engine is None:
        if not cfg.streak.configured:
            logger.warning("STREAK_API_KEY is not set; every lookup will be rejected")
        owned = client = StreakClient(cfg.streak)
        engine = ResolutionEngine(client, StageCache(), max_matches=cfg.max_matches)
    if gate is None:
        gate = PopGate(cfg.pop_cooldown)
    yield
    if owned is not None:
        await owned.aclose()
        client = engine = None


app = FastAPI(title="RingStreak", version=__version__, lifespan=lifespan)


# ─── Pydantic Models ─────────────────────────────────────────────────


class IngestCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_number: str = Field("", alias="from")
    to_number: str = Field("", alias="to")
    direction: str = "inbound"
    call_id: str | None = Field(None, alias="callId")


def _lookup_failed(error: Exception) -> JSONResponse:
    logger.error("Lookup failed: %s", error)
    return JSONResponse({"error": "lookup failed"}, status_code=502)


def _secret_ok(provided: str | None) -> bool:
    expected = get_config().shared_secret
    if not expected:
        return True
    return hmac.compare_digest((provided or "").encode(), expected.encode())


# ─── Routes ──────────────────────────────────────────────────────────


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.get("/lookup")
async def lookup(phone: str = Query(..., description="Phone number in any format")):
    try:
        response = await engine.resolve(phone)
    except StreakAuthError as e:
        return _lookup_failed(e)
    return response.to_dict()


@app.post("/ingest/call")
async def ingest_call(
    body: IngestCallRequest,
    x_ringstreak_secret: str | None = Header(None),
):
    if not _secret_ok(x_ringstreak_secret):
        return JSONResponse({"error": "invalid secret"}, status_code=401)

    event = CallEvent(body.direction, body.from_number, body.to_number, body.call_id)
    try:
        payload = await handle_call(event, engine, gate)
    except StreakAuthError as e:
        return _lookup_failed(e)
    if payload is None:
        return {"suppressed": True, "callId": event.call_id}
    return payload


@app.get("/calls/recent")
async def recent_calls(count: int = Query(10, ge=1, le=100)):
    entries = bus.read_recent(CALLS_STREAM, count=count)
    return {"calls": [e["payload"] for e in entries]}
