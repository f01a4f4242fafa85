"""Matcher module for the job catalog pipeline.

Two kinds of pure filtering, no I/O:

1. Title exclusion — applied at ingestion; excluded postings are never
   written to the catalog.
2. Saved-search predicate — `matches(job, search_filter)` decides whether
   a catalog entry belongs in a subscriber's alert.

Predicate semantics (every set field narrows, AND-ed together; an unset,
empty or "ALL" field is a wildcard):

  state        exact match on the normalized 2-letter region code
  company      case-insensitive substring of the normalized company
  source       exact match on the catalog source id
  query        case-insensitive substring of title + company + locations
  remote_only  "remote" appears in any location field
  pay_only     job.has_pay is True (the flag only, no text heuristics)
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from jobcatalog.models import WILDCARD, Job, SearchFilter
from jobcatalog.normalize import normalize_state

logger = logging.getLogger(__name__)


# ── Title Matching ──────────────────────────────────────────────────────────


def title_matches_exclude(title: str, exclude_keywords: list[str]) -> bool:
    """Check if title contains any of the exclude keywords (case-insensitive)."""
    if not exclude_keywords:
        return False

    title_lower = (title or "").lower()
    return any(kw.lower() in title_lower for kw in exclude_keywords if kw)


# ── Saved-Search Predicate ──────────────────────────────────────────────────


def _is_set(value: Optional[str]) -> bool:
    if value is None:
        return False
    text = value.strip()
    return bool(text) and text.upper() != WILDCARD


def _location_fields(job: Job) -> list[str]:
    return [job.location_raw or "", job.location_city or "", job.location_state or ""]


def is_remote(job: Job) -> bool:
    return any("remote" in field.lower() for field in _location_fields(job))


def _search_text(job: Job) -> str:
    return " ".join([job.title or "", job.company or ""] + _location_fields(job)).lower()


def matches(job: Job, search_filter: SearchFilter) -> bool:
    """Return True if `job` satisfies every set field of `search_filter`."""
    f = search_filter

    if _is_set(f.state):
        if job.location_state != normalize_state(f.state):
            return False

    if _is_set(f.company):
        if f.company.strip().lower() not in (job.company or "").lower():
            return False

    if _is_set(f.source):
        if job.source != f.source.strip():
            return False

    if _is_set(f.query):
        if f.query.strip().lower() not in _search_text(job):
            return False

    if f.remote_only and not is_remote(job):
        return False

    if f.pay_only and job.has_pay is not True:
        return False

    return True


def filter_matches(jobs: Iterable[Job], search_filter: SearchFilter) -> list[Job]:
    """Keep the jobs that match, preserving input order."""
    passed = [job for job in jobs if matches(job, search_filter)]
    logger.debug("Predicate filter: %d passed", len(passed))
    return passed
