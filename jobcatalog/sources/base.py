"""Abstract base class for all listing sources."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from jobcatalog.config import PipelineConfig, SourceConfig
from jobcatalog.errors import (
    MalformedSourceError,
    SourceError,
    SourceNotFoundError,
    TransientFetchError,
)
from jobcatalog.models import RawPosting

logger = logging.getLogger(__name__)

# When every candidate endpoint fails, the aggregated error takes the
# first class in this list that any attempt raised.
_SEVERITY = (MalformedSourceError, SourceNotFoundError, TransientFetchError)

_RETRY_STATUSES = {408, 429}


class BaseSource(ABC):
    """Base class that all source fetchers extend.

    Provides shared HTTP utilities (session management, rate limiting,
    retries, error classification) so individual sources only implement
    `candidate_urls()` and `parse()`. Fetching is read-only.
    """

    def __init__(
        self,
        source_config: SourceConfig,
        pipeline_config: PipelineConfig,
        session: Optional[requests.Session] = None,
    ):
        self.source_config = source_config
        self.pipeline_config = pipeline_config
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": pipeline_config.user_agent})
        self._last_request_time: float = 0

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    @abstractmethod
    def candidate_urls(self) -> list[str]:
        """Endpoints to try, in priority order."""
        ...

    @abstractmethod
    def parse(self, payload: Any) -> list[RawPosting]:
        """Turn a decoded JSON payload into postings.

        Raise MalformedSourceError if the payload isn't the expected shape.
        """
        ...

    @property
    def name(self) -> str:
        return self.source_config.name

    @property
    def source_id(self) -> str:
        return self.source_config.source_id

    def fetch(self) -> list[RawPosting]:
        """Fetch the full current listing from the first endpoint that works.

        Raises a single SourceError summarizing every failed candidate.
        """
        failures: list[SourceError] = []
        for url in self.candidate_urls():
            try:
                payload = self._get_json(url)
                postings = self.parse(payload)
            except SourceError as exc:
                logger.warning(
                    "[%s] candidate %s failed (%s): %s",
                    self.name, url, exc.classification, exc.message,
                )
                failures.append(exc)
                continue
            logger.info("[%s] %s returned %d postings", self.name, url, len(postings))
            return postings

        raise self._aggregate(failures)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _get_json(self, url: str, **kwargs) -> Any:
        resp = self._get(url, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedSourceError(
                self.name, f"{url} returned non-JSON ({resp.headers.get('Content-Type', '?')})"
            ) from exc

    def _get(self, url: str, **kwargs) -> requests.Response:
        """Rate-limited GET with retries on transient failures only."""
        kwargs.setdefault("timeout", self.pipeline_config.request_timeout_seconds)
        attempts = max(1, self.pipeline_config.request_retries)

        for attempt in range(1, attempts + 1):
            self._rate_limit()
            try:
                resp = self.session.get(url, **kwargs)
                self._raise_for_status(url, resp)
                return resp
            except TransientFetchError as exc:
                logger.warning(
                    "[%s] GET %s attempt %d failed: %s", self.name, url, attempt, exc.message
                )
                if attempt == attempts:
                    raise
                time.sleep(self.pipeline_config.request_delay_seconds * 2 ** attempt)
            except (requests.Timeout, requests.ConnectionError) as exc:
                logger.warning(
                    "[%s] GET %s attempt %d failed: %s", self.name, url, attempt, exc
                )
                if attempt == attempts:
                    raise TransientFetchError(self.name, f"{url}: {exc}") from exc
                time.sleep(self.pipeline_config.request_delay_seconds * 2 ** attempt)
            except requests.RequestException as exc:
                raise TransientFetchError(self.name, f"{url}: {exc}") from exc

        # Unreachable, but keeps type checkers happy
        raise RuntimeError("Retry loop exited unexpectedly")

    def _raise_for_status(self, url: str, resp: requests.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        snippet = (resp.text or "")[:200]
        if status in (404, 410):
            raise SourceNotFoundError(self.name, f"HTTP {status} for {url}")
        if status >= 500 or status in _RETRY_STATUSES:
            raise TransientFetchError(self.name, f"HTTP {status} for {url} :: {snippet}")
        raise MalformedSourceError(self.name, f"HTTP {status} for {url} :: {snippet}")

    def _rate_limit(self) -> None:
        """Enforce minimum delay between requests."""
        delay = self.pipeline_config.request_delay_seconds
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < delay:
            time.sleep(delay - elapsed)
        self._last_request_time = time.monotonic()

    def _aggregate(self, failures: list[SourceError]) -> SourceError:
        if not failures:
            return SourceNotFoundError(self.name, "no candidate endpoints configured")
        summary = "; ".join(f.message for f in failures)
        for cls in _SEVERITY:
            if any(isinstance(f, cls) for f in failures):
                return cls(self.name, summary)
        return SourceError(self.name, summary)
