"""Sync orchestrator — pulls every source into the catalog.

This is the ingestion pipeline:
  1. Instantiate a fetcher per enabled source
  2. Fetch each source's full listing (with error isolation)
  3. Validate postings and drop title-excluded ones
  4. Normalize location, company and pay
  5. Upsert the batch keyed on fingerprint
  6. Sweep that source's entries not seen in this run

Sources may run in parallel (`max_workers`), but steps 5 and 6 for one
source always happen in that order inside the same worker.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from jobcatalog.catalog import CatalogWriter, build_fingerprint
from jobcatalog.config import PipelineConfig
from jobcatalog.errors import PersistenceError, SourceError, ValidationError
from jobcatalog.matcher import title_matches_exclude
from jobcatalog.models import Job, RawPosting, RunRecord, parse_timestamp, utcnow
from jobcatalog.normalize import compute_pay_fields, normalize_company, parse_location
from jobcatalog.sources import BaseSource, build_source
from jobcatalog.storage import CatalogStore

logger = logging.getLogger(__name__)


@dataclass
class SourceResult:
    """What happened to one source during one sync run."""

    source: str
    fetched: int = 0
    invalid: int = 0
    excluded: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deactivated: int = 0
    swept: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    invalid_reasons: list[str] = field(default_factory=list)

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated + self.unchanged


def validate_posting(raw: RawPosting) -> None:
    """Reject postings without a title or a resolvable absolute url."""
    if not (raw.title or "").strip():
        raise ValidationError(f"posting {raw.native_id or raw.url!r} has no title")
    parsed = urlparse((raw.url or "").strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"posting {raw.title!r} has no resolvable url")


def normalize_posting(
    raw: RawPosting,
    source_id: str,
    company_overrides: Optional[dict[str, str]] = None,
) -> Job:
    """Build a catalog entry from a validated raw posting."""
    location = parse_location(raw.location)
    pay = compute_pay_fields(raw.title, location.raw, raw.content)
    title = raw.title.strip()
    url = raw.url.strip()

    return Job(
        fingerprint=build_fingerprint(source_id, raw.native_id, url),
        source=source_id,
        source_job_id=(raw.native_id or "").strip(),
        title=title,
        url=url,
        company_raw=raw.company,
        company=normalize_company(raw.company, company_overrides),
        location_raw=location.raw,
        location_city=location.city,
        location_state=location.state,
        description=raw.content or "",
        has_pay=pay.has_pay,
        pay_extracted=pay.pay_extracted,
        posted_at=parse_timestamp(raw.updated_at),
    )


class SyncPipeline:
    """Orchestrates one ingestion run across all configured sources."""

    def __init__(
        self,
        config: PipelineConfig,
        store: CatalogStore,
        sources: Optional[list[BaseSource]] = None,
    ):
        self.config = config
        self.store = store
        self.writer = CatalogWriter(store)
        self.build_errors: list[str] = []
        self.sources: list[BaseSource] = sources if sources is not None else self._build_sources()

    def _build_sources(self) -> list[BaseSource]:
        """Instantiate fetchers for each enabled source in config."""
        sources: list[BaseSource] = []
        for source_config in self.config.enabled_sources:
            try:
                sources.append(build_source(source_config, self.config))
                logger.info(
                    "Initialized source: %s (%s)", source_config.name, source_config.source_type
                )
            except SourceError as exc:
                logger.error("[%s] not_found: %s", source_config.name, exc.message)
                self.build_errors.append(str(exc))
        return sources

    def run(self, now: Optional[datetime] = None) -> RunRecord:
        """Sync every source; one source's failure never aborts the others."""
        run = RunRecord(kind="sync", started_at=now or utcnow())
        run_at = run.started_at
        self.store.save_run(run)

        for message in self.build_errors:
            run.record_error(message)

        logger.info(
            "Starting sync with %d sources (run_id=%s)", len(self.sources), run.id
        )

        workers = max(1, min(self.config.max_workers, len(self.sources) or 1))
        try:
            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers) as pool:
                    results = list(pool.map(lambda s: self.sync_source(s, run_at), self.sources))
            else:
                results = [self.sync_source(source, run_at) for source in self.sources]

            for result in results:
                self._tally(run, result)
        except Exception as exc:
            logger.exception("Sync run %s aborted", run.id)
            run.record_error(f"run aborted: {exc}")
            run.finish(failed=True)
            self.store.save_run(run)
            raise

        run.finish()
        self.store.save_run(run)
        self._log_stats(run, results)
        return run

    def sync_source(self, source: BaseSource, run_at: datetime) -> SourceResult:
        """Fetch, filter, normalize, upsert and sweep a single source."""
        result = SourceResult(source=source.source_id)

        try:
            postings = source.fetch()
        except SourceError as exc:
            result.error = str(exc)
            result.error_kind = exc.classification
            logger.error("[%s] fetch failed (%s): %s", source.name, exc.classification, exc.message)
            return result
        except Exception as exc:
            result.error = f"[{source.name}] {exc}"
            result.error_kind = "unexpected"
            logger.exception("[%s] fetch crashed", source.name)
            return result

        result.fetched = len(postings)
        jobs: list[Job] = []
        for raw in postings:
            try:
                validate_posting(raw)
                if title_matches_exclude(raw.title, self.config.title_exclude):
                    result.excluded += 1
                    continue
                jobs.append(normalize_posting(raw, source.source_id, self.config.company_overrides))
            except ValidationError as exc:
                result.invalid += 1
                result.invalid_reasons.append(str(exc))
                logger.debug("[%s] skipping posting: %s", source.name, exc)
            except Exception as exc:
                result.invalid += 1
                result.invalid_reasons.append(f"posting {raw.native_id!r}: {exc}")
                logger.exception("[%s] posting %r could not be normalized", source.name, raw.native_id)

        try:
            upsert = self.writer.upsert_batch(source.source_id, jobs, run_at)
        except PersistenceError as exc:
            # Sweep is skipped: unwritten postings must not go inactive.
            result.error = str(exc)
            result.error_kind = "persistence"
            logger.error("[%s] upsert failed, skipping staleness sweep: %s", source.name, exc)
            return result

        result.inserted = upsert.inserted
        result.updated = upsert.updated
        result.unchanged = upsert.unchanged

        try:
            result.deactivated = self.writer.sweep_stale(source.source_id, run_at)
            result.swept = True
        except PersistenceError as exc:
            result.error = str(exc)
            result.error_kind = "persistence"
            logger.error("[%s] staleness sweep failed: %s", source.name, exc)
            return result

        logger.info(
            "[%s] upserted %d (new %d), excluded %d, invalid %d, deactivated %d",
            source.name, result.upserted, result.inserted,
            result.excluded, result.invalid, result.deactivated,
        )
        return result

    @staticmethod
    def _tally(run: RunRecord, result: SourceResult) -> None:
        run.incr("sources")
        run.incr("fetched", result.fetched)
        run.incr("invalid", result.invalid)
        run.incr("excluded", result.excluded)
        run.incr("inserted", result.inserted)
        run.incr("updated", result.updated)
        run.incr("unchanged", result.unchanged)
        run.incr("upserted", result.upserted)
        run.incr("deactivated", result.deactivated)
        if result.error:
            run.incr(f"errors_{result.error_kind}")
            run.record_error(result.error)

    @staticmethod
    def _log_stats(run: RunRecord, results: list[SourceResult]) -> None:
        """Print a summary of results per source."""
        logger.info("=== Sync Summary (%s) ===", run.status.value)
        for result in results:
            if result.error:
                logger.info("  %s: FAILED (%s)", result.source, result.error_kind)
            else:
                logger.info(
                    "  %s: %d upserted, %d deactivated",
                    result.source, result.upserted, result.deactivated,
                )
        logger.info(
            "  totals: upserted=%d excluded=%d invalid=%d errors=%d",
            run.counters.get("upserted", 0),
            run.counters.get("excluded", 0),
            run.counters.get("invalid", 0),
            run.counters.get("errors", 0),
        )
