"""
Phone-identity resolution engine.

Architecture:
  Phone -> Normalize -> Seed search batch (E.164 / digits / last 10 / +1 last 10)
  -> Confirm contacts by phone -> Linked boxes -> Secondary search batch
     (organization, name tokens, email, email domain)
  -> Dedupe by key -> Sort by recency -> Enrich top boxes -> Rank

Streak's search has no notion of phone numbers, so recall comes from
fanning out many textual queries and keeping only contacts whose phone
digits really match. Each batch runs concurrently; its results are folded
into keyed maps only after the whole batch completes.

Usage:
    engine = ResolutionEngine(client, StageCache())
    response = await engine.resolve("555-123-4567")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from ringstreak.crm.client import StreakAuthError, StreakClient
from ringstreak.crm.enrichment import StageCache, enrich_record
from ringstreak.crm.models import (
    PERSON_KEY_FIELDS,
    RECORD_KEY_FIELDS,
    LookupResponse,
    MatchLinks,
    MatchResult,
    Person,
    Record,
    fill_person_gaps,
    needs_detail,
    person_from_search_row,
    record_from_search_row,
    row_key,
    split_search_payload,
)
from ringstreak.lookup.normalize import digits_only, normalize, same_number

logger = logging.getLogger(__name__)

MAX_MATCHES = 12
MIN_TOKEN_LENGTH = 2


# ─── Query construction ──────────────────────────────────────────────────


def seed_queries(e164: str) -> list[str]:
    """Phone-shaped search strings for the first batch, deduplicated in order."""
    digits = digits_only(e164)
    last10 = digits[-10:]
    queries = [e164, digits, last10, f"+1{last10}" if len(last10) == 10 else ""]
    return list(dict.fromkeys(q for q in queries if q))


def secondary_queries(person: Person) -> list[str]:
    """Facet queries that widen recall once we know who the caller is."""
    queries: list[str] = []
    if person.organization:
        queries.append(person.organization)
    if person.name:
        queries.append(person.name)
        queries += [t for t in person.name.split() if len(t) >= MIN_TOKEN_LENGTH]
    if person.email:
        queries.append(person.email)
        _, _, domain = person.email.partition("@")
        if domain:
            queries.append(domain)
    return list(dict.fromkeys(q.strip() for q in queries if q and q.strip()))


# ─── Folding ─────────────────────────────────────────────────────────────


def merge_rows(
    batches: Iterable[Sequence[dict]], key_fields: Sequence[str], into: dict[str, dict] | None = None
) -> dict[str, dict]:
    """Fold row batches into a key → row map. The first row seen for a key wins."""
    merged = dict(into or {})
    for batch in batches:
        for row in batch:
            key = row_key(row, key_fields)
            if key and key not in merged:
                merged[key] = row
    return merged


def sort_by_recency(records: Iterable[Record]) -> list[Record]:
    """Newest first; records without a timestamp go last, keeping their order."""
    return sorted(
        records,
        key=lambda r: (
            r.last_updated_timestamp is None,
            -(r.last_updated_timestamp or 0),
        ),
    )


def rank_matches(matches: Iterable[MatchResult]) -> list[MatchResult]:
    """Higher score first, then person name (case-insensitive), nameless last.

    Stable, so boxes of the same person keep their recency order.
    """
    return sorted(
        matches,
        key=lambda m: (-m.score, m.person.name is None, (m.person.name or "").lower()),
    )


def confirmed_people(contact_rows: Iterable[dict], target_digits: str) -> list[Person]:
    """Contacts with at least one phone matching the target; the rest was search noise."""
    people: list[Person] = []
    for row in contact_rows:
        person = person_from_search_row(row)
        if person is None:
            continue
        if any(same_number(p, target_digits) for p in person.all_phones()):
            people.append(person)
        else:
            logger.debug("Discarding contact %s: no phone matches %s", person.key, target_digits)
    return people


# ─── Engine ──────────────────────────────────────────────────────────────


class ResolutionEngine:
    """Resolve a phone number to the CRM contact and boxes behind it."""

    def __init__(
        self,
        client: StreakClient,
        stage_cache: StageCache | None = None,
        *,
        max_matches: int = MAX_MATCHES,
        fetch_contact_detail: bool = True,
    ) -> None:
        self.client = client
        self.stage_cache = stage_cache if stage_cache is not None else StageCache()
        self.max_matches = max_matches
        self.fetch_contact_detail = fetch_contact_detail

    async def resolve(self, phone_number: str) -> LookupResponse:
        query = phone_number if phone_number is not None else ""
        normalized = normalize(phone_number)
        if not normalized:
            logger.debug("Lookup %r: no digits, nothing to search", phone_number)
            return LookupResponse(query=query, normalized=None, matches=())

        target = digits_only(normalized)

        contact_rows, record_rows = await self._seed_search(normalized)
        records = merge_rows([record_rows], RECORD_KEY_FIELDS)

        people = confirmed_people(contact_rows.values(), target)
        if not people:
            logger.info("Lookup %s: no confirmed contact", normalized)
            return LookupResponse(query=query, normalized=normalized, matches=())

        if len(people) > 1:
            logger.info(
                "Lookup %s: %d contacts share this number, using %s",
                normalized,
                len(people),
                people[0].key,
            )
        primary = await self._with_detail(people[0])

        linked = await self._gather_rows(
            [self.client.get_linked_records(p.key) for p in people], "linked boxes"
        )
        records = merge_rows(linked, RECORD_KEY_FIELDS, into=records)

        queries = [q for q in secondary_queries(primary) if q not in seed_queries(normalized)]
        secondary = await self._gather_rows([self._search_records(q) for q in queries], "secondary search")
        records = merge_rows(secondary, RECORD_KEY_FIELDS, into=records)

        mapped = [r for r in map(record_from_search_row, records.values()) if r]
        ordered = sort_by_recency(mapped)[: self.max_matches]
        logger.debug(
            "Lookup %s: %d boxes discovered, enriching %d", normalized, len(mapped), len(ordered)
        )

        matches = await self._build_matches(primary, ordered)
        return LookupResponse(query=query, normalized=normalized, matches=tuple(rank_matches(matches)))

    # ─── Steps ───────────────────────────────────────────────────────────

    async def _seed_search(self, normalized: str) -> tuple[dict[str, dict], list[dict]]:
        """Run the phone-shaped queries as one batch.

        An authorization failure propagates; anything else counts as no results.
        """
        queries = seed_queries(normalized)
        results = await asyncio.gather(
            *(self.client.search(q) for q in queries), return_exceptions=True
        )

        contact_batches: list[list[dict]] = []
        record_batches: list[list[dict]] = []
        for q, result in zip(queries, results):
            if isinstance(result, (StreakAuthError, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Seed search %r failed: %s", q, result)
                continue
            contacts, boxes = split_search_payload(result)
            contact_batches.append(contacts)
            record_batches.append(boxes)

        contacts = merge_rows(contact_batches, PERSON_KEY_FIELDS)
        records = list(merge_rows(record_batches, RECORD_KEY_FIELDS).values())
        return contacts, records

    async def _with_detail(self, person: Person) -> Person:
        if not self.fetch_contact_detail or not needs_detail(person):
            return person
        try:
            detail = person_from_search_row(await self.client.get_contact_detail(person.key))
        except Exception as e:
            logger.warning("Contact detail for %s failed: %s", person.key, e)
            return person
        return fill_person_gaps(person, detail)

    async def _search_records(self, query: str) -> list[dict]:
        payload = await self.client.search(query)
        return split_search_payload(payload)[1]

    async def _gather_rows(self, coros: list[Any], label: str) -> list[list[dict]]:
        """Run a batch; failed members contribute nothing."""
        if not coros:
            return []
        results = await asyncio.gather(*coros, return_exceptions=True)
        batches: list[list[dict]] = []
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("%s failed: %s", label.capitalize(), result)
                continue
            batches.append([row for row in result if isinstance(row, dict)])
        return batches

    async def _build_matches(self, person: Person, records: list[Record]) -> list[MatchResult]:
        person_link = self.client.person_link(person.key)
        if not records:
            return [MatchResult(score=1, person=person, links=MatchLinks(person_link=person_link))]

        enriched = await asyncio.gather(
            *(enrich_record(self.client, r, self.stage_cache) for r in records),
            return_exceptions=True,
        )
        matches = []
        for record, result in zip(records, enriched):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Enriching box %s failed: %s", record.key, result)
                result = record
            matches.append(
                MatchResult(
                    score=2,
                    person=person,
                    record=result,
                    links=MatchLinks(
                        person_link=person_link,
                        record_link=self.client.record_link(record.key),
                    ),
                )
            )
        return matches
