"""Shared fixtures and fakes for the job catalog tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from jobcatalog.config import PipelineConfig, SourceConfig
from jobcatalog.models import Job, RawPosting
from jobcatalog.sources.base import BaseSource
from jobcatalog.storage import MemoryStore

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeSource(BaseSource):
    """A source whose fetch() returns canned postings or raises."""

    def __init__(
        self,
        board: str,
        postings: Optional[list[RawPosting]] = None,
        error: Optional[Exception] = None,
        config: Optional[PipelineConfig] = None,
    ):
        super().__init__(
            SourceConfig(name=board, board=board),
            config or PipelineConfig(request_delay_seconds=0),
        )
        self.postings = postings or []
        self.error = error
        self.calls = 0

    def candidate_urls(self) -> list[str]:
        return []

    def parse(self, payload: Any) -> list[RawPosting]:
        return []

    def fetch(self) -> list[RawPosting]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.postings)


class RecordingSender:
    """Notification sender that remembers messages, optionally failing."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_with = fail_with

    def send(self, to: str, subject: str, html: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to, subject, html))


def make_posting(native_id: str, title: str, location: str = "Chicago, IL", **kwargs) -> RawPosting:
    kwargs.setdefault("url", f"https://boards.greenhouse.io/acme/jobs/{native_id}")
    kwargs.setdefault("company", "acme")
    return RawPosting(native_id=native_id, title=title, location=location, **kwargs)


def make_job(fingerprint: str = "greenhouse:acme::1", **kwargs) -> Job:
    defaults = dict(
        source="greenhouse:acme",
        source_job_id=fingerprint.split("::")[-1],
        title="Leasing Manager",
        url=f"https://boards.greenhouse.io/acme/jobs/{fingerprint.split('::')[-1]}",
        company_raw="acme",
        company="Acme",
        location_raw="Chicago, IL",
        location_city="Chicago",
        location_state="IL",
        last_seen_at=T0,
        first_seen_at=T0,
        updated_at=T0,
    )
    defaults.update(kwargs)
    return Job(fingerprint=fingerprint, **defaults)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def config() -> PipelineConfig:
    return PipelineConfig(
        sources=[],
        title_exclude=["maintenance", "janitor"],
        request_delay_seconds=0,
        request_retries=1,
    )
