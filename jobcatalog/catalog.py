"""Fingerprinting and idempotent catalog writes.

A job's identity is `<source>::<native id>` (or the posting url when the
source has no id). Title, description and location never feed the key,
so edits upstream update the same row instead of creating a new one.

Writes go through `CatalogWriter`:
  1. upsert the source's whole batch keyed on fingerprint
  2. only then sweep that source's entries not seen in this run

If the upsert fails the sweep is skipped, otherwise postings we never got
to write would be wrongly marked inactive.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from jobcatalog.errors import PersistenceError, ValidationError
from jobcatalog.models import Job
from jobcatalog.storage import CatalogStore, UpsertResult

logger = logging.getLogger(__name__)

FINGERPRINT_SEPARATOR = "::"


def build_fingerprint(source: str, source_job_id: Optional[str], url: Optional[str]) -> str:
    """Stable identity key for a posting. Prefers the source-native id."""
    source = (source or "").strip()
    native = (source_job_id or "").strip()
    fallback = (url or "").strip()
    if not source:
        raise ValidationError("Cannot fingerprint a posting without a source")
    if not native and not fallback:
        raise ValidationError(f"Posting from {source} has neither an id nor a url")
    return f"{source}{FINGERPRINT_SEPARATOR}{native or fallback}"


class CatalogWriter:
    """Upserts batches and runs the per-source staleness sweep."""

    def __init__(self, store: CatalogStore):
        self.store = store

    def upsert_batch(self, source: str, jobs: Iterable[Job], run_at: datetime) -> UpsertResult:
        """Write a source's batch; every row is stamped seen at `run_at`.

        Duplicate fingerprints within the batch collapse to the last one.
        """
        batch: dict[str, Job] = {}
        for job in jobs:
            if job.source != source:
                raise ValidationError(
                    f"Job {job.fingerprint} belongs to {job.source}, not {source}"
                )
            job.last_seen_at = run_at
            job.is_active = True
            batch[job.fingerprint] = job

        try:
            result = self.store.upsert_jobs(batch.values())
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Upsert failed for {source}: {exc}") from exc

        logger.debug(
            "[%s] upserted %d (inserted=%d, updated=%d, unchanged=%d)",
            source, result.total, result.inserted, result.updated, result.unchanged,
        )
        return result

    def sweep_stale(self, source: str, run_at: datetime) -> int:
        """Deactivate this source's entries that were not seen in this run."""
        try:
            count = self.store.mark_stale(source, run_at)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Staleness sweep failed for {source}: {exc}") from exc

        if count:
            logger.info("[%s] marked %d stale postings inactive", source, count)
        return count
