"""
Record enrichment: pipeline stage names and last-email previews.

Both lookups tolerate incomplete upstream APIs. Stage lists are cached per
pipeline for the life of the process (including empty results, so a broken
pipeline is not refetched on every call). Email previews come from the
current timeline API, falling back to the legacy threads API.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from typing import Any

from ringstreak.crm.client import StreakClient
from ringstreak.crm.models import Record, record_from_search_row, rows_from_payload, stage_names_from_payload

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
TIMELINE_LIMIT = 25


class StageCache:
    """Process-scoped map of pipeline key → {stage key → stage name}.

    Append-only. While a pipeline's stage list is being fetched, the
    in-flight task is tracked so concurrent callers await it instead of
    fetching again.
    """

    def __init__(self) -> None:
        self._stages: dict[str, dict[str, str]] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def get(self, pipeline_key: str) -> dict[str, str] | None:
        return self._stages.get(pipeline_key)

    def put(self, pipeline_key: str, stages: dict[str, str]) -> None:
        self._stages[pipeline_key] = dict(stages)

    def pending(self, pipeline_key: str) -> asyncio.Task | None:
        return self._pending.get(pipeline_key)

    def track(self, pipeline_key: str, task: asyncio.Task) -> None:
        self._pending[pipeline_key] = task
        task.add_done_callback(lambda t: self._settle(pipeline_key, t))

    def _settle(self, pipeline_key: str, task: asyncio.Task) -> None:
        if self._pending.get(pipeline_key) is task:
            del self._pending[pipeline_key]

    def clear(self) -> None:
        self._stages.clear()
        self._pending.clear()

    def __contains__(self, pipeline_key: object) -> bool:
        return pipeline_key in self._stages

    def __len__(self) -> int:
        return len(self._stages)


@dataclass(frozen=True)
class StageInfo:
    pipeline_key: str | None = None
    stage_key: str | None = None
    stage_name: str | None = None


async def stage_names(client: StreakClient, pipeline_key: str, cache: StageCache) -> dict[str, str]:
    """Stage names for a pipeline, fetched at most once per process.

    Callers arriving while the fetch is in flight share its result.
    Cancelling one caller leaves the shared fetch running for the others.
    """
    cached = cache.get(pipeline_key)
    if cached is not None:
        return cached

    task = cache.pending(pipeline_key)
    if task is None:
        task = asyncio.ensure_future(_fetch_stage_names(client, pipeline_key, cache))
        cache.track(pipeline_key, task)
    return await asyncio.shield(task)


async def _fetch_stage_names(client: StreakClient, pipeline_key: str, cache: StageCache) -> dict[str, str]:
    try:
        payload = await client.get_stage_list(pipeline_key)
    except Exception as e:
        logger.warning("Stage list for pipeline %s failed: %s", pipeline_key, e)
        payload = None

    names = stage_names_from_payload(payload) if payload is not None else {}
    if not names:
        logger.debug("No stages for pipeline %s, caching empty map", pipeline_key)
    cache.put(pipeline_key, names)
    return names


async def resolve_stage_name(client: StreakClient, record: Record, cache: StageCache) -> StageInfo:
    """Resolve the human-readable stage of a record.

    Records from some search paths lack pipeline/stage keys; those get a
    detail fetch first.
    """
    pipeline_key, stage_key = record.pipeline_key, record.stage_key

    if not pipeline_key or not stage_key:
        try:
            detail = record_from_search_row(await client.get_record_detail(record.key))
        except Exception as e:
            logger.warning("Detail fetch for box %s failed: %s", record.key, e)
            detail = None
        if detail:
            pipeline_key = pipeline_key or detail.pipeline_key
            stage_key = stage_key or detail.stage_key

    if not pipeline_key:
        return StageInfo(stage_key=stage_key)

    names = await stage_names(client, pipeline_key, cache)
    return StageInfo(
        pipeline_key=pipeline_key,
        stage_key=stage_key,
        stage_name=names.get(stage_key) if stage_key else None,
    )


# ─── Email previews ──────────────────────────────────────────────────────


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return float("-inf")
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else float("-inf")
    if isinstance(value, str) and value.strip().isdigit():
        return float(value.strip())
    return float("-inf")


def _item_timestamp(item: dict) -> float:
    for name in ("timestamp", "lastUpdatedTimestamp", "creationTimestamp", "date"):
        ts = _number(item.get(name))
        if ts != float("-inf"):
            return ts
    return float("-inf")


def _is_email_entry(item: dict) -> bool:
    kind = str(item.get("type") or item.get("entryType") or "").lower()
    return "email" in kind or "thread" in kind


def _text_of(item: dict, *names: str) -> str:
    sources = [item]
    for nested in ("thread", "email", "data"):
        if isinstance(item.get(nested), dict):
            sources.append(item[nested])
    for source in sources:
        for name in names:
            value = source.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return ""


def format_preview(item: dict) -> str:
    """``"<subject> — <snippet>"`` for a thread-like dict."""
    subject = _text_of(item, "subject") or NO_SUBJECT
    snippet = _text_of(item, "snippet", "preview", "bodyPreview")
    return f"{subject} — {snippet}".strip() if snippet else subject


async def _timeline_preview(client: StreakClient, record_key: str) -> str | None:
    try:
        payload = await client.get_timeline(record_key, TIMELINE_LIMIT)
    except Exception as e:
        logger.warning("Timeline for box %s failed: %s", record_key, e)
        return None
    entries = [i for i in rows_from_payload(payload, "items", "results") if _is_email_entry(i)]
    if not entries:
        return None
    newest = max(entries, key=_item_timestamp)
    return format_preview(newest)


async def _legacy_thread_preview(client: StreakClient, record_key: str) -> str | None:
    try:
        threads = await client.get_legacy_threads(record_key)
    except Exception as e:
        logger.warning("Threads for box %s failed: %s", record_key, e)
        return None
    if not threads:
        return None
    threads = sorted(threads, key=lambda t: _number(t.get("lastUpdatedTimestamp")), reverse=True)
    return format_preview(threads[0])


async def last_email_preview(client: StreakClient, record_key: str) -> str | None:
    """Preview of the most recent email thread on a box, or None."""
    preview = await _timeline_preview(client, record_key)
    if preview:
        return preview
    return await _legacy_thread_preview(client, record_key)


async def enrich_record(client: StreakClient, record: Record, cache: StageCache) -> Record:
    """Attach stage name (and any keys learned on the way) plus the email preview."""
    stage = await resolve_stage_name(client, record, cache)
    preview = await last_email_preview(client, record.key)
    return replace(
        record,
        pipeline_key=record.pipeline_key or stage.pipeline_key,
        stage_key=record.stage_key or stage.stage_key,
        stage_name=stage.stage_name,
        last_email_preview=preview,
    )
