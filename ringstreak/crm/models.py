"""
CRM entities and shape converters for raw Streak payloads.

Streak answers with two generations of JSON: the legacy v1 shape (flat
``name`` / ``email`` / ``phone`` strings) and the current v2 shape
(``givenName`` / ``familyName`` plus ``emailAddresses`` / ``phoneNumbers``
lists). Everything raw is converted here; nothing untyped leaves this module.

Usage:
    from ringstreak.crm.models import person_from_search_row, split_search_payload

    contacts, records = split_search_payload(client_payload)
    people = [p for p in map(person_from_search_row, contacts) if p]
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

PERSON_KEY_FIELDS = ("key", "contactKey", "id", "personKey")
RECORD_KEY_FIELDS = ("key", "boxKey")


class SchemaVersion(str, Enum):
    LEGACY = "v1"
    CURRENT = "v2"


_CURRENT_MARKERS = ("givenName", "familyName", "emailAddresses", "phoneNumbers")


# ─── Entities ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Person:
    """A CRM contact. Identity is ``key``."""

    key: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    phones: tuple[str, ...] | None = None
    organization: str | None = None
    extra_fields: dict[str, Any] = field(default_factory=dict)

    def all_phones(self) -> list[str]:
        """Every phone number on the contact, not just ``phone``."""
        numbers = [self.phone] if self.phone else []
        return numbers + list(self.phones or ())

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "phones": list(self.phones) if self.phones else None,
            "organization": self.organization,
            "fields": dict(self.extra_fields),
        }


@dataclass(frozen=True)
class Record:
    """A pipeline item (Streak box). Identity is ``key``."""

    key: str
    name: str | None = None
    pipeline_key: str | None = None
    stage_key: str | None = None
    stage_name: str | None = None
    last_updated_timestamp: int | None = None
    last_email_preview: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "pipelineKey": self.pipeline_key,
            "stageKey": self.stage_key,
            "stageName": self.stage_name,
            "lastUpdatedTimestamp": self.last_updated_timestamp,
            "lastEmailPreview": self.last_email_preview,
        }


@dataclass(frozen=True)
class MatchLinks:
    person_link: str | None = None
    record_link: str | None = None


@dataclass(frozen=True)
class MatchResult:
    """One candidate answer: a person, optionally with one of their records.

    ``score`` is 2 when a record is attached and 1 for a bare contact hit.
    """

    score: int
    person: Person
    record: Record | None = None
    links: MatchLinks = field(default_factory=MatchLinks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "person": self.person.to_dict(),
            "record": self.record.to_dict() if self.record else None,
            "links": {
                "personLink": self.links.person_link,
                "recordLink": self.links.record_link,
            },
        }


@dataclass(frozen=True)
class LookupResponse:
    """Result of one phone lookup. ``normalized`` is None only for digit-less input."""

    query: str
    normalized: str | None
    matches: tuple[MatchResult, ...] = ()

    @property
    def top(self) -> MatchResult | None:
        return self.matches[0] if self.matches else None

    @property
    def others(self) -> tuple[MatchResult, ...]:
        return self.matches[1:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "normalized": self.normalized,
            "matches": [m.to_dict() for m in self.matches],
        }


# ─── Field helpers ───────────────────────────────────────────────────────


def _text(value: Any) -> str | None:
    """Non-empty stripped string, or None."""
    if value is None or isinstance(value, (dict, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def _first_text(raw: Mapping, *names: str) -> str | None:
    for name in names:
        value = _text(raw.get(name))
        if value:
            return value
    return None


def _timestamp(value: Any) -> int | None:
    """Epoch milliseconds from an int, float or digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _list_values(value: Any, *inner: str) -> list[str]:
    """Flatten a string, list of strings or list of ``{address: ...}`` dicts."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    out: list[str] = []
    for item in items:
        if isinstance(item, Mapping):
            text = _first_text(item, *inner)
        else:
            text = _text(item)
        if text:
            out.append(text)
    return out


def row_key(raw: Mapping, fields: Iterable[str]) -> str | None:
    """First present identifier among ``fields``."""
    for name in fields:
        value = _text(raw.get(name))
        if value:
            return value
    return None


def schema_version(raw: Mapping) -> SchemaVersion:
    """Which API generation produced a contact row."""
    if any(marker in raw for marker in _CURRENT_MARKERS):
        return SchemaVersion.CURRENT
    return SchemaVersion.LEGACY


# ─── Person mapping ──────────────────────────────────────────────────────


def _person_name(raw: Mapping) -> str | None:
    given = _text(raw.get("givenName"))
    family = _text(raw.get("familyName"))
    if given and family:
        return f"{given} {family}"
    return _text(raw.get("name")) or _text(raw.get("fullName")) or given or family


def _person_phones(raw: Mapping) -> list[str]:
    numbers: list[str] = []
    for name in ("phone", "phoneNumber", "phoneNumbers", "phones"):
        numbers += _list_values(raw.get(name), "phoneNumber", "number", "value")
    return list(dict.fromkeys(numbers))


def _person_organization(raw: Mapping) -> str | None:
    org = _first_text(raw, "organization", "organizationName", "company")
    if org:
        return org
    orgs = _list_values(raw.get("organizations"), "name")
    return orgs[0] if orgs else None


def _extra_fields(raw: Mapping) -> dict[str, Any]:
    extra = raw.get("fields")
    return dict(extra) if isinstance(extra, Mapping) else {}


def _legacy_person(key: str, raw: Mapping) -> Person:
    phones = _person_phones(raw)
    return Person(
        key=key,
        name=_person_name(raw),
        email=_first_text(raw, "email", "emailAddress"),
        phone=phones[0] if len(phones) == 1 else None,
        phones=tuple(phones) if len(phones) > 1 else None,
        organization=_person_organization(raw),
        extra_fields=_extra_fields(raw),
    )


def _current_person(key: str, raw: Mapping) -> Person:
    phones = _person_phones(raw)
    emails = _list_values(raw.get("emailAddresses"), "address", "email", "value")
    return Person(
        key=key,
        name=_person_name(raw),
        email=emails[0] if emails else _first_text(raw, "email"),
        phone=phones[0] if len(phones) == 1 else None,
        phones=tuple(phones) if len(phones) > 1 else None,
        organization=_person_organization(raw),
        extra_fields=_extra_fields(raw),
    )


def person_from_search_row(raw: Any) -> Person | None:
    """Convert a raw contact row to a Person.

    Returns None only when the row is not a mapping or has no identifier.
    """
    if not isinstance(raw, Mapping):
        return None
    key = row_key(raw, PERSON_KEY_FIELDS)
    if not key:
        return None
    if schema_version(raw) is SchemaVersion.CURRENT:
        return _current_person(key, raw)
    return _legacy_person(key, raw)


def fill_person_gaps(person: Person, detail: Person | None) -> Person:
    """Fill missing email/organization/name on ``person`` from a detail fetch.

    A single-word name is replaced by a longer one from the detail row.
    """
    if detail is None:
        return person
    name = person.name
    if not name or (detail.name and " " not in name and " " in detail.name):
        name = detail.name or name
    phone, phones = person.phone, person.phones
    if not person.all_phones():
        phone, phones = detail.phone, detail.phones
    return Person(
        key=person.key,
        name=name,
        email=person.email or detail.email,
        phone=phone,
        phones=phones,
        organization=person.organization or detail.organization,
        extra_fields={**detail.extra_fields, **person.extra_fields},
    )


def needs_detail(person: Person) -> bool:
    """True if a search row lacks email, organization or a multi-word name."""
    return not person.email or not person.organization or not person.name or " " not in person.name


# ─── Record mapping ──────────────────────────────────────────────────────


def record_from_search_row(raw: Any) -> Record | None:
    """Convert a raw box row to a Record. None if the row has no key."""
    if not isinstance(raw, Mapping):
        return None
    key = row_key(raw, RECORD_KEY_FIELDS)
    if not key:
        return None
    return Record(
        key=key,
        name=_text(raw.get("name")),
        pipeline_key=_text(raw.get("pipelineKey")),
        stage_key=_text(raw.get("stageKey")),
        last_updated_timestamp=_timestamp(raw.get("lastUpdatedTimestamp")),
    )


# ─── Payload helpers ─────────────────────────────────────────────────────


def rows_from_payload(payload: Any, *wrappers: str) -> list[dict]:
    """Pull a list of dict rows out of a bare list or a wrapping object."""
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, Mapping):
        for name in wrappers:
            inner = payload.get(name)
            if isinstance(inner, list):
                return [row for row in inner if isinstance(row, dict)]
    return []


def _row_type(row: Mapping) -> str:
    return str(row.get("type") or row.get("resultType") or "").upper()


def split_search_payload(payload: Any) -> tuple[list[dict], list[dict]]:
    """Return ``(contact_rows, record_rows)`` from a search response.

    Accepts ``{"results": {"contacts": [...], "records"|"boxes": [...]}}`` as
    well as a flat result list whose rows carry a ``type``.
    """
    if not isinstance(payload, Mapping):
        payload = {"results": payload}
    results = payload.get("results")

    if isinstance(results, Mapping):
        contacts = rows_from_payload(results, "contacts")
        records = rows_from_payload(results, "records") or rows_from_payload(results, "boxes")
        return contacts, records

    rows = rows_from_payload(results)
    contacts = [r for r in rows if "CONTACT" in _row_type(r)]
    records = [r for r in rows if "BOX" in _row_type(r) or "RECORD" in _row_type(r)]
    return contacts, records


def stage_names_from_payload(payload: Any) -> dict[str, str]:
    """Map stage key → stage name from any stage-list shape Streak returns."""
    rows = rows_from_payload(payload, "items", "stages", "results")
    if not rows and isinstance(payload, Mapping):
        rows = [
            {"key": key, **value}
            for key, value in payload.items()
            if isinstance(value, Mapping)
        ]
    names: dict[str, str] = {}
    for row in rows:
        key = row_key(row, ("key", "stageKey", "id"))
        name = _text(row.get("name"))
        if key and name:
            names[key] = name
    return names
