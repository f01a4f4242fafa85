"""Data models for the job catalog pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

WILDCARD = "ALL"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RawPosting:
    """A posting exactly as a source returned it, before normalization."""

    native_id: str
    title: str
    url: str
    location: str = ""
    updated_at: str = ""
    content: str = ""
    company: str = ""
    location_candidates: list[str] = field(default_factory=list)


@dataclass
class Job:
    """A normalized, deduplicated catalog entry.

    `fingerprint` is the identity key; every other field is refreshed on
    re-observation. `first_seen_at` is set once, `updated_at` only moves
    when a content field actually changes.
    """

    fingerprint: str
    source: str  # e.g. "greenhouse:acme"
    source_job_id: str
    title: str
    url: str
    company_raw: str = ""
    company: str = ""
    location_raw: str = ""
    location_city: Optional[str] = None
    location_state: Optional[str] = None
    description: str = ""
    has_pay: bool = False
    pay_extracted: Optional[str] = None
    posted_at: Optional[datetime] = None
    is_active: bool = True
    last_seen_at: Optional[datetime] = None
    first_seen_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Fields compared to decide whether a re-observation changed anything.
    CONTENT_FIELDS = (
        "source",
        "source_job_id",
        "title",
        "url",
        "company_raw",
        "company",
        "location_raw",
        "location_city",
        "location_state",
        "description",
        "has_pay",
        "pay_extracted",
        "posted_at",
    )

    def content_equals(self, other: "Job") -> bool:
        return all(
            getattr(self, name) == getattr(other, name) for name in self.CONTENT_FIELDS
        )

    @property
    def location_display(self) -> str:
        if self.location_city and self.location_state:
            return f"{self.location_city}, {self.location_state}"
        return self.location_raw or self.location_state or ""

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("posted_at", "last_seen_at", "first_seen_at", "updated_at"):
            d[key] = format_timestamp(d[key])
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        d = dict(data)
        for key in ("posted_at", "last_seen_at", "first_seen_at", "updated_at"):
            d[key] = parse_timestamp(d.get(key))
        return cls(**d)

    def __repr__(self) -> str:
        return (
            f"Job(fingerprint={self.fingerprint!r}, title={self.title!r}, "
            f"company={self.company!r}, active={self.is_active})"
        )


@dataclass
class SearchFilter:
    """Filter part of a saved search. Unset, empty or "ALL" means wildcard."""

    query: Optional[str] = None
    company: Optional[str] = None
    state: Optional[str] = None
    source: Optional[str] = None
    remote_only: bool = False
    pay_only: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SearchFilter":
        data = data or {}
        return cls(
            query=data.get("query") or data.get("q"),
            company=data.get("company"),
            state=data.get("state") or data.get("location_state"),
            source=data.get("source"),
            remote_only=bool(data.get("remote_only", False)),
            pay_only=bool(data.get("pay_only", False)),
        )


@dataclass
class SavedSearch:
    """A subscriber's saved filter plus enablement and watermark state."""

    id: str
    email: str
    filter: SearchFilter = field(default_factory=SearchFilter)
    name: str = ""
    enabled: bool = True
    watermark: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "filter": self.filter.to_dict(),
            "enabled": self.enabled,
            "watermark": format_timestamp(self.watermark),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SavedSearch":
        return cls(
            id=str(data["id"]),
            email=data.get("email", ""),
            name=data.get("name", ""),
            filter=SearchFilter.from_dict(data.get("filter")),
            enabled=bool(data.get("enabled", True)),
            watermark=parse_timestamp(data.get("watermark")),
        )


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    DRY_RUN = "dry_run"


@dataclass
class DeliveryRecord:
    """One outbound notification for one saved search in one alert run."""

    search_id: str
    run_id: str
    job_fingerprints: list[str]
    id: str = field(default_factory=new_id)
    status: DeliveryStatus = DeliveryStatus.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def matched_count(self) -> int:
        return len(self.job_fingerprints)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "search_id": self.search_id,
            "run_id": self.run_id,
            "job_fingerprints": list(self.job_fingerprints),
            "matched_count": self.matched_count,
            "status": self.status.value,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryRecord":
        return cls(
            id=data["id"],
            search_id=data["search_id"],
            run_id=data["run_id"],
            job_fingerprints=list(data.get("job_fingerprints", [])),
            status=DeliveryStatus(data.get("status", "queued")),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(data.get("updated_at")),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
        )


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


@dataclass
class RunRecord:
    """Audit record for one sync, alert or delivery cycle."""

    kind: str  # "sync", "alerts" or "deliver"
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    counters: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.finished_at is not None

    def incr(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def record_error(self, message: str) -> None:
        self.incr("errors")
        self.errors.append(message)

    def finish(self, failed: bool = False) -> "RunRecord":
        if self.is_finalized:
            raise ValueError(f"Run {self.id} is already finalized")
        self.finished_at = utcnow()
        if failed:
            self.status = RunStatus.FAILED
        elif self.counters.get("errors", 0):
            self.status = RunStatus.COMPLETED_WITH_ERRORS
        else:
            self.status = RunStatus.COMPLETED
        return self

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "started_at": format_timestamp(self.started_at),
            "finished_at": format_timestamp(self.finished_at),
            "status": self.status.value,
            "counters": dict(self.counters),
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunRecord":
        return cls(
            id=data["id"],
            kind=data["kind"],
            started_at=parse_timestamp(data.get("started_at")) or utcnow(),
            finished_at=parse_timestamp(data.get("finished_at")),
            status=RunStatus(data.get("status", "running")),
            counters=dict(data.get("counters", {})),
            errors=list(data.get("errors", [])),
        )
