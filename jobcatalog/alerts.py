"""Saved-search alert cycle.

One run walks every enabled saved search independently:

  window    since the search's watermark, or `default_lookback_hours`
            before the run when it has none; reaches back to the start
            of any sync that finished after the watermark, since rows
            are stamped with their sync's start time
  candidates active catalog entries whose content changed in the window
  match     `matcher.matches(job, search.filter)`
  dedup     drop jobs already in the delivery ledger for this search
  queue     one `queued` DeliveryRecord; the store claims the ledger pairs
            atomically with creating it
  advance   move the watermark to the run timestamp, even when nothing
            matched, so the window keeps moving

A search that raises is logged and counted, keeps its old watermark, and
never stops the remaining searches. Only failing to read the search list
itself ends the run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from jobcatalog.config import AlertConfig
from jobcatalog.errors import PersistenceError
from jobcatalog.matcher import filter_matches
from jobcatalog.models import DeliveryRecord, RunRecord, SavedSearch, utcnow
from jobcatalog.storage import CatalogStore

logger = logging.getLogger(__name__)


class AlertRunCoordinator:
    """Matches catalog changes against saved searches and queues deliveries."""

    def __init__(self, store: CatalogStore, config: Optional[AlertConfig] = None):
        self.store = store
        self.config = config or AlertConfig()

    def window_start(
        self,
        search: SavedSearch,
        run_at: datetime,
        sync_runs: Iterable[RunRecord] = (),
    ) -> datetime:
        if search.watermark is None:
            return run_at - timedelta(hours=self.config.default_lookback_hours)

        since = search.watermark
        for sync in sync_runs:
            # Unfinished or finished after the watermark: may have committed
            # rows stamped earlier than the watermark.
            if sync.finished_at is None or sync.finished_at > search.watermark:
                since = min(since, sync.started_at)
        return since

    def run(self, now: Optional[datetime] = None) -> RunRecord:
        run = RunRecord(kind="alerts", started_at=now or utcnow())
        run_at = run.started_at
        self.store.save_run(run)
        logger.info("Starting alert run %s", run.id)

        try:
            searches = self.store.list_enabled_searches()
            sync_runs = self.store.list_runs("sync")
        except PersistenceError as exc:
            logger.error("Cannot read saved searches, aborting run: %s", exc)
            run.record_error(str(exc))
            run.finish(failed=True)
            self.store.save_run(run)
            raise

        logger.info("Found %d enabled saved searches", len(searches))

        for search in searches:
            run.incr("subscriptions_processed")
            try:
                delivery = self.process_search(search, run.id, run_at, sync_runs)
            except Exception as exc:
                logger.exception("Saved search %s failed; watermark left unchanged", search.id)
                run.record_error(f"search {search.id}: {exc}")
                continue

            if delivery is not None:
                run.incr("deliveries_queued")
                run.incr("jobs_queued", delivery.matched_count)

            try:
                self.store.set_watermark(search.id, run_at)
            except Exception as exc:
                logger.exception(
                    "Saved search %s: watermark not advanced%s", search.id,
                    f" (delivery {delivery.id} already queued)" if delivery else "",
                )
                run.record_error(f"search {search.id} watermark: {exc}")

        run.counters.setdefault("deliveries_queued", 0)
        run.counters.setdefault("errors", 0)
        run.finish()
        self.store.save_run(run)

        logger.info(
            "Alert run %s %s: %d searches, %d deliveries queued, %d errors",
            run.id,
            run.status.value,
            run.counters.get("subscriptions_processed", 0),
            run.counters["deliveries_queued"],
            run.counters["errors"],
        )
        return run

    def process_search(
        self,
        search: SavedSearch,
        run_id: str,
        run_at: datetime,
        sync_runs: Iterable[RunRecord] = (),
    ) -> Optional[DeliveryRecord]:
        """Evaluate one saved search. Returns the queued delivery, if any.

        The caller advances the watermark once the result is counted.
        """
        since = self.window_start(search, run_at, sync_runs)
        candidates = self.store.find_jobs(active=True, changed_since=since)
        matched = filter_matches(candidates, search.filter)

        already = self.store.delivered_fingerprints(search.id)
        fresh = [job.fingerprint for job in matched if job.fingerprint not in already]

        delivery: Optional[DeliveryRecord] = None
        if fresh:
            delivery = self.store.queue_delivery(
                DeliveryRecord(
                    search_id=search.id,
                    run_id=run_id,
                    job_fingerprints=fresh,
                    created_at=run_at,
                )
            )

        if delivery is not None:
            logger.info(
                "Search %s (%s): %d new matches queued (delivery %s)",
                search.id, search.email, delivery.matched_count, delivery.id,
            )
        else:
            logger.info(
                "Search %s (%s): %d matched, 0 new since %s",
                search.id, search.email, len(matched), since.isoformat(),
            )
        return delivery
