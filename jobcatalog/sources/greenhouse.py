"""Greenhouse job board source.

Greenhouse provides a public JSON API at:
  https://boards-api.greenhouse.io/v1/boards/{board_token}/jobs

This returns structured data with id, title, location, absolute url and
(with content=true) the HTML description. The legacy api.greenhouse.io
host serves the same payload and is kept as a fallback candidate.
"""

from __future__ import annotations

import html
import logging
from typing import Any
from urllib.parse import quote

from jobcatalog.errors import MalformedSourceError
from jobcatalog.models import RawPosting
from jobcatalog.normalize import best_location, html_to_text
from jobcatalog.sources.base import BaseSource

logger = logging.getLogger(__name__)

API_BASES = (
    "https://boards-api.greenhouse.io/v1/boards",
    "https://api.greenhouse.io/v1/boards",
)


class GreenhouseSource(BaseSource):
    """Fetches job listings from the Greenhouse public JSON API."""

    @property
    def board_token(self) -> str:
        return self.source_config.board or self.source_config.name

    def candidate_urls(self) -> list[str]:
        board = quote(self.board_token, safe="")
        return [f"{base}/{board}/jobs?content=true" for base in API_BASES]

    def parse(self, payload: Any) -> list[RawPosting]:
        if not isinstance(payload, dict) or not isinstance(payload.get("jobs"), list):
            raise MalformedSourceError(self.name, "response has no 'jobs' list")

        postings: list[RawPosting] = []
        for raw in payload["jobs"]:
            if not isinstance(raw, dict):
                logger.warning("[%s] skipping non-object job entry: %r", self.name, raw)
                continue
            postings.append(self._parse_job(raw))
        return postings

    def _parse_job(self, raw: dict) -> RawPosting:
        """Convert a single Greenhouse API job object into a RawPosting."""
        location = raw.get("location") or {}
        candidates: list[str] = []
        if isinstance(location, dict):
            candidates = [str(location.get(k) or "") for k in ("location", "name")]
        elif isinstance(location, str):
            candidates = [location]

        # Greenhouse double-encodes the description: entities wrapping HTML.
        content = raw.get("content") or ""
        description = html_to_text(html.unescape(content)) if content else ""

        native_id = raw.get("id")
        return RawPosting(
            native_id=str(native_id) if native_id is not None else "",
            title=str(raw.get("title") or "").strip(),
            url=str(raw.get("absolute_url") or "").strip(),
            location=best_location(*candidates),
            updated_at=str(raw.get("updated_at") or ""),
            content=description,
            company=self.source_config.company or self.board_token,
            location_candidates=[c for c in candidates if c],
        )
