"""
Async Streak CRM API client.

Wraps one httpx.AsyncClient (Basic auth: API key as user name, empty
password). Streak exposes two API generations side by side; each method
knows which base path (``/v1`` or ``/v2``) its endpoint lives under, trying
the current one first where both exist.

Any failed call (transport error, non-2xx status or unparseable body) is logged and
turned into "no data". The one exception is ``search()``, which raises
StreakAuthError on 401/403: without search access there is nothing to look up.

Usage:
    async with StreakClient(get_config().streak) as client:
        payload = await client.search("+15551234567")
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Any

import httpx

from ringstreak.config import StreakConfig
from ringstreak.crm.models import rows_from_payload

logger = logging.getLogger(__name__)

LEGACY = "v1"
CURRENT = "v2"

_RETRY_STATUSES = {429, 500, 502, 503, 504}
_COMPOSITE_KEY = re.compile(r"^[^,]+,~~[^~]*~~(\d+)$")


class StreakError(RuntimeError):
    """Base class for errors the Streak client lets escape."""


class StreakAuthError(StreakError):
    """Streak rejected our credentials (HTTP 401/403)."""

    def __init__(self, status_code: int, path: str) -> None:
        super().__init__(f"Streak rejected credentials ({status_code}) for {path}")
        self.status_code = status_code
        self.path = path


def decode_legacy_key(key: str) -> str | None:
    """Extract the numeric id from an opaque composite key.

    Current-API keys are base64url of ``"<Type>,~~<namespace>~~<numericId>"``;
    the legacy API wants ``numericId``. Returns None for anything else.
    """
    if not key:
        return None
    padded = key + "=" * (-len(key) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    match = _COMPOSITE_KEY.match(decoded)
    return match.group(1) if match else None


class StreakClient:
    """Async client for the Streak REST API."""

    def __init__(
        self,
        config: StreakConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or StreakConfig()
        self.base_url = self.config.api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self.config.api_key, ""),
            timeout=self.config.timeout,
            transport=transport or httpx.AsyncHTTPTransport(retries=self.config.retries),
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> StreakClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ─── Links ───────────────────────────────────────────────────────────

    def person_link(self, person_key: str) -> str:
        return f"{self.config.web_base}/people/{person_key}"

    def record_link(self, record_key: str) -> str:
        return f"{self.config.web_base}/p/{record_key}"

    # ─── Transport ───────────────────────────────────────────────────────

    async def _request(
        self, version: str, path: str, params: dict[str, Any] | None = None
    ) -> httpx.Response:
        """GET with retry on 429/5xx. Raises httpx errors to the caller."""
        url = f"/{version}{path}"
        attempt = 0
        while True:
            resp = await self._client.get(url, params=params)
            if resp.status_code not in _RETRY_STATUSES or attempt >= self.config.retries:
                return resp
            delay = self.config.backoff * (2**attempt)
            logger.debug("Streak GET %s -> %s, retrying in %.2fs", url, resp.status_code, delay)
            await asyncio.sleep(delay)
            attempt += 1

    async def _get_json(
        self, version: str, path: str, params: dict[str, Any] | None = None
    ) -> Any | None:
        """GET and decode JSON. None on any failure."""
        try:
            resp = await self._request(version, path, params)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Streak GET /%s%s failed: %s", version, path, e.response.status_code
            )
        except httpx.HTTPError as e:
            logger.warning("Streak GET /%s%s unreachable: %s", version, path, e)
        except ValueError as e:
            logger.warning("Streak GET /%s%s returned invalid JSON: %s", version, path, e)
        return None

    # ─── Search ──────────────────────────────────────────────────────────

    async def search(self, query: str) -> dict[str, Any]:
        """Full-text search across contacts and boxes.

        Returns the raw ``{"results": {...}}`` payload, or ``{}`` on failure.
        Raises StreakAuthError when the API rejects our credentials.
        """
        path = "/search"
        try:
            resp = await self._request(LEGACY, path, {"query": query})
        except httpx.HTTPError as e:
            logger.warning("Streak search %r unreachable: %s", query, e)
            return {}

        if resp.status_code in (401, 403):
            raise StreakAuthError(resp.status_code, f"/{LEGACY}{path}")
        if resp.status_code != 200:
            logger.warning("Streak search %r failed: %s", query, resp.status_code)
            return {}
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Streak search %r returned invalid JSON", query)
            return {}
        return data if isinstance(data, dict) else {"results": data}

    # ─── Contacts ────────────────────────────────────────────────────────

    async def get_contact_detail(self, contact_key: str) -> dict[str, Any] | None:
        data = await self._get_json(CURRENT, f"/contacts/{contact_key}")
        return data if isinstance(data, dict) else None

    async def get_linked_records(self, person_key: str) -> list[dict]:
        """Boxes linked to a contact; current API, then legacy with plain and decoded keys."""
        data = await self._get_json(CURRENT, f"/contacts/{person_key}/boxes")
        if data is not None:
            return rows_from_payload(data, "results", "boxes", "items")

        candidates = [person_key]
        decoded = decode_legacy_key(person_key)
        if decoded and decoded != person_key:
            candidates.append(decoded)

        for key in candidates:
            data = await self._get_json(LEGACY, f"/contacts/{key}/boxes")
            if data is not None:
                return rows_from_payload(data, "results", "boxes", "items")

        logger.debug("No linked boxes for contact %s", person_key)
        return []

    # ─── Boxes ───────────────────────────────────────────────────────────

    async def get_record_detail(self, record_key: str) -> dict[str, Any] | None:
        data = await self._get_json(LEGACY, f"/boxes/{record_key}")
        return data if isinstance(data, dict) else None

    async def get_stage_list(self, pipeline_key: str) -> Any | None:
        """Raw stage list for a pipeline (current API, then legacy). None if both fail."""
        data = await self._get_json(CURRENT, f"/pipelines/{pipeline_key}/stages")
        if data is None:
            data = await self._get_json(LEGACY, f"/pipelines/{pipeline_key}/stages")
        return data

    async def get_timeline(self, record_key: str, limit: int = 25) -> dict[str, Any]:
        data = await self._get_json(CURRENT, f"/boxes/{record_key}/timeline", {"limit": limit})
        if isinstance(data, list):
            return {"items": data}
        return data if isinstance(data, dict) else {"items": []}

    async def get_legacy_threads(self, record_key: str) -> list[dict]:
        data = await self._get_json(LEGACY, f"/boxes/{record_key}/threads")
        return rows_from_payload(data, "results", "threads", "items")
