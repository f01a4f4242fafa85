"""Catalog store for the job catalog pipeline.

The pipeline never talks to a database directly; it goes through the
`CatalogStore` port so tests can run against an in-memory fake. Two
implementations ship:

1. **MemoryStore** — dicts guarded by one lock. Used by tests and for
   local dry runs.

2. **JsonFileStore** — the same model persisted as JSON files in a data
   directory:
   - `jobs.json`        catalog entries keyed by fingerprint
   - `searches.json`    saved searches keyed by id
   - `deliveries.json`  delivery records keyed by id
   - `ledger.json`      {search_id: [fingerprint, ...]} already notified
   - `runs.json`        run records keyed by id

All file writes use the atomic write pattern:
  1. Write to .tmp file
  2. fsync
  3. Rename to target (atomic on POSIX)

Before each write, a .bak backup is created. If the primary file is
corrupted, it's restored from .bak automatically. If both are unreadable
the store refuses to start rather than silently forgetting the ledger.

The delivery ledger is the at-most-once boundary: `queue_delivery` checks
and claims (search, job) pairs under the store lock, so two overlapping
alert runs in one process can never both claim the same pair. Separate
processes sharing one data directory must be kept apart by the scheduler.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from jobcatalog.errors import PersistenceError
from jobcatalog.models import (
    DeliveryRecord,
    DeliveryStatus,
    Job,
    RunRecord,
    SavedSearch,
)

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged


def merge_observation(existing: Optional[Job], incoming: Job) -> tuple[Job, str]:
    """Fold a fresh observation into the stored entry.

    Returns the row to store and one of "inserted", "updated", "unchanged".
    `first_seen_at` survives from the stored row; `updated_at` only moves
    when a content field differs.
    """
    seen_at = incoming.last_seen_at
    if existing is None:
        row = replace(incoming, is_active=True, first_seen_at=seen_at, updated_at=seen_at)
        return row, "inserted"

    if existing.content_equals(incoming):
        row = replace(existing, is_active=True, last_seen_at=seen_at)
        return row, "unchanged"

    row = replace(
        incoming,
        is_active=True,
        first_seen_at=existing.first_seen_at,
        updated_at=seen_at,
    )
    return row, "updated"


class CatalogStore(ABC):
    """Port used by the sync, alert and delivery pipelines."""

    # ── Catalog ──

    @abstractmethod
    def upsert_jobs(self, jobs: Iterable[Job]) -> UpsertResult:
        """Insert-or-update each job keyed on its fingerprint."""

    @abstractmethod
    def mark_stale(self, source: str, run_at: datetime) -> int:
        """Deactivate entries of `source` not seen at or after `run_at`."""

    @abstractmethod
    def get_jobs(self, fingerprints: Iterable[str]) -> list[Job]:
        """Return the stored rows for the given fingerprints, skipping unknowns."""

    @abstractmethod
    def find_jobs(
        self,
        source: Optional[str] = None,
        active: Optional[bool] = None,
        changed_since: Optional[datetime] = None,
    ) -> list[Job]:
        """Read-by-filter. Results are ordered newest change first."""

    # ── Saved searches ──

    @abstractmethod
    def save_search(self, search: SavedSearch) -> None: ...

    @abstractmethod
    def get_search(self, search_id: str) -> Optional[SavedSearch]: ...

    @abstractmethod
    def list_enabled_searches(self) -> list[SavedSearch]: ...

    @abstractmethod
    def set_watermark(self, search_id: str, watermark: datetime) -> None: ...

    # ── Delivery ledger & deliveries ──

    @abstractmethod
    def delivered_fingerprints(self, search_id: str) -> set[str]:
        """Fingerprints already notified for this search."""

    @abstractmethod
    def queue_delivery(self, record: DeliveryRecord) -> Optional[DeliveryRecord]:
        """Atomically claim the record's (search, job) pairs and store it.

        Pairs already in the ledger are dropped from the record. Returns
        None (and stores nothing) when no pair is left to claim.
        """

    @abstractmethod
    def list_deliveries(
        self, statuses: Optional[Iterable[DeliveryStatus]] = None
    ) -> list[DeliveryRecord]: ...

    @abstractmethod
    def update_delivery(self, record: DeliveryRecord) -> None: ...

    # ── Runs ──

    @abstractmethod
    def save_run(self, run: RunRecord) -> None:
        """Store a run record. A finalized run can never be overwritten."""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[RunRecord]: ...

    @abstractmethod
    def list_runs(self, kind: Optional[str] = None) -> list[RunRecord]: ...


class MemoryStore(CatalogStore):
    """In-process store. Thread-safe; one lock covers every collection."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._searches: dict[str, SavedSearch] = {}
        self._deliveries: dict[str, DeliveryRecord] = {}
        self._ledger: dict[str, set[str]] = {}
        self._runs: dict[str, RunRecord] = {}

    def _changed(self, collection: str) -> None:
        """Hook called after a collection is mutated. No-op in memory."""

    # ── Catalog ──

    def upsert_jobs(self, jobs: Iterable[Job]) -> UpsertResult:
        result = UpsertResult()
        with self._lock:
            previous: dict[str, Optional[Job]] = {}
            for job in jobs:
                existing = self._jobs.get(job.fingerprint)
                previous.setdefault(job.fingerprint, existing)
                row, outcome = merge_observation(existing, job)
                self._jobs[job.fingerprint] = row
                setattr(result, outcome, getattr(result, outcome) + 1)
            try:
                self._changed("jobs")
            except PersistenceError:
                for fingerprint, row in previous.items():
                    if row is None:
                        self._jobs.pop(fingerprint, None)
                    else:
                        self._jobs[fingerprint] = row
                raise
        return result

    def mark_stale(self, source: str, run_at: datetime) -> int:
        with self._lock:
            stale = [
                job for job in self._jobs.values()
                if job.source == source
                and job.is_active
                and (job.last_seen_at is None or job.last_seen_at < run_at)
            ]
            for job in stale:
                self._jobs[job.fingerprint] = replace(job, is_active=False)
            if stale:
                self._changed("jobs")
        return len(stale)

    def get_jobs(self, fingerprints: Iterable[str]) -> list[Job]:
        with self._lock:
            return [self._jobs[fp] for fp in fingerprints if fp in self._jobs]

    def find_jobs(
        self,
        source: Optional[str] = None,
        active: Optional[bool] = None,
        changed_since: Optional[datetime] = None,
    ) -> list[Job]:
        with self._lock:
            rows = list(self._jobs.values())
        if source is not None:
            rows = [j for j in rows if j.source == source]
        if active is not None:
            rows = [j for j in rows if j.is_active == active]
        if changed_since is not None:
            rows = [j for j in rows if j.updated_at and j.updated_at >= changed_since]
        return sorted(rows, key=_change_order, reverse=True)

    # ── Saved searches ──

    def save_search(self, search: SavedSearch) -> None:
        with self._lock:
            self._searches[search.id] = search
            self._changed("searches")

    def get_search(self, search_id: str) -> Optional[SavedSearch]:
        with self._lock:
            return self._searches.get(search_id)

    def list_enabled_searches(self) -> list[SavedSearch]:
        with self._lock:
            return [s for s in self._searches.values() if s.enabled]

    def set_watermark(self, search_id: str, watermark: datetime) -> None:
        with self._lock:
            search = self._searches.get(search_id)
            if search is None:
                raise PersistenceError(f"Unknown saved search {search_id!r}")
            previous = search.watermark
            search.watermark = watermark
            try:
                self._changed("searches")
            except PersistenceError:
                search.watermark = previous
                raise

    # ── Delivery ledger & deliveries ──

    def delivered_fingerprints(self, search_id: str) -> set[str]:
        with self._lock:
            return set(self._ledger.get(search_id, ()))

    def queue_delivery(self, record: DeliveryRecord) -> Optional[DeliveryRecord]:
        with self._lock:
            claimed = self._ledger.setdefault(record.search_id, set())
            fresh: list[str] = []
            for fp in record.job_fingerprints:
                if fp not in claimed and fp not in fresh:
                    fresh.append(fp)
            if not fresh:
                return None

            record.job_fingerprints = fresh
            claimed.update(fresh)
            try:
                # Ledger first: a crash in between loses a notification
                # rather than sending one twice.
                self._changed("ledger")
            except PersistenceError:
                claimed.difference_update(fresh)
                raise
            self._deliveries[record.id] = record
            self._changed("deliveries")
            return record

    def list_deliveries(
        self, statuses: Optional[Iterable[DeliveryStatus]] = None
    ) -> list[DeliveryRecord]:
        with self._lock:
            rows = list(self._deliveries.values())
        if statuses is not None:
            wanted = set(statuses)
            rows = [r for r in rows if r.status in wanted]
        return sorted(rows, key=lambda r: r.created_at)

    def update_delivery(self, record: DeliveryRecord) -> None:
        with self._lock:
            if record.id not in self._deliveries:
                raise PersistenceError(f"Unknown delivery {record.id!r}")
            self._deliveries[record.id] = record
            self._changed("deliveries")

    # ── Runs ──

    def save_run(self, run: RunRecord) -> None:
        with self._lock:
            existing = self._runs.get(run.id)
            if existing is not None and existing.is_finalized:
                raise PersistenceError(f"Run {run.id} is finalized and cannot change")
            self._runs[run.id] = RunRecord.from_dict(run.to_dict())
            self._changed("runs")

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(self, kind: Optional[str] = None) -> list[RunRecord]:
        with self._lock:
            rows = list(self._runs.values())
        if kind is not None:
            rows = [r for r in rows if r.kind == kind]
        return sorted(rows, key=lambda r: r.started_at)


class JsonFileStore(MemoryStore):
    """MemoryStore persisted to a directory of JSON files."""

    FILES = {
        "jobs": "jobs.json",
        "searches": "searches.json",
        "deliveries": "deliveries.json",
        "ledger": "ledger.json",
        "runs": "runs.json",
    }

    def __init__(self, data_dir: str | Path) -> None:
        super().__init__()
        self.data_dir = Path(data_dir)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create data dir {self.data_dir}: {exc}") from exc
        self._load()

    def _path(self, collection: str) -> Path:
        return self.data_dir / self.FILES[collection]

    def _load(self) -> None:
        jobs = _safe_read_json(self._path("jobs"), default={})
        self._jobs = {fp: Job.from_dict(row) for fp, row in jobs.items()}

        searches = _safe_read_json(self._path("searches"), default={})
        self._searches = {sid: SavedSearch.from_dict(row) for sid, row in searches.items()}

        deliveries = _safe_read_json(self._path("deliveries"), default={})
        self._deliveries = {
            did: DeliveryRecord.from_dict(row) for did, row in deliveries.items()
        }

        ledger = _safe_read_json(self._path("ledger"), default={})
        self._ledger = {sid: set(fps) for sid, fps in ledger.items()}

        runs = _safe_read_json(self._path("runs"), default={})
        self._runs = {rid: RunRecord.from_dict(row) for rid, row in runs.items()}

        logger.info(
            "Loaded store from %s: %d jobs, %d searches, %d deliveries",
            self.data_dir, len(self._jobs), len(self._searches), len(self._deliveries),
        )

    def _serialize(self, collection: str) -> Any:
        if collection == "jobs":
            return {fp: job.to_dict() for fp, job in self._jobs.items()}
        if collection == "searches":
            return {sid: s.to_dict() for sid, s in self._searches.items()}
        if collection == "deliveries":
            return {did: d.to_dict() for did, d in self._deliveries.items()}
        if collection == "ledger":
            return {sid: sorted(fps) for sid, fps in self._ledger.items()}
        if collection == "runs":
            return {rid: r.to_dict() for rid, r in self._runs.items()}
        raise KeyError(collection)

    def _changed(self, collection: str) -> None:
        try:
            _backup_and_write(self._path(collection), self._serialize(collection))
        except OSError as exc:
            raise PersistenceError(f"Failed to write {collection}: {exc}") from exc


# ── Internal Helpers ───────────────────────────────────────────────────────


def _change_order(job: Job) -> tuple[float, str]:
    return (job.updated_at.timestamp() if job.updated_at else 0.0, job.fingerprint)


def _safe_read_json(path: Path, default: Any) -> Any:
    """Read a JSON file, restoring from .bak if corrupted.

    If the primary file can't be parsed, tries .bak. If both fail,
    raises PersistenceError.
    """
    if not path.exists():
        return default

    try:
        with open(path, "r") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s: %s — trying backup", path, exc)

    bak_path = path.with_suffix(path.suffix + ".bak")
    if bak_path.exists():
        try:
            with open(bak_path, "r") as f:
                data = json.load(f)
            logger.info("Restored %s from backup", path)
            _atomic_write_json(path, data)
            return data
        except (json.JSONDecodeError, OSError) as exc:
            logger.error("Backup %s also corrupted: %s", bak_path, exc)

    raise PersistenceError(f"Could not read {path} or its backup")


def _backup_and_write(path: Path, data: Any) -> None:
    """Create a .bak backup of the current file, then atomically write new data."""
    if path.exists():
        bak_path = path.with_suffix(path.suffix + ".bak")
        try:
            shutil.copy2(path, bak_path)
        except OSError as exc:
            logger.warning("Failed to create backup of %s: %s", path, exc)

    _atomic_write_json(path, data)


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON data atomically using temp file + rename."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")

    try:
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())

        tmp_path.replace(path)
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def write_run_artifact(run: RunRecord, output_dir: str | Path) -> Path:
    """Write a finalized run record to `<output_dir>/runs/` for operators."""
    out_dir = Path(output_dir) / "runs"
    out_dir.mkdir(parents=True, exist_ok=True)

    stamp = (run.finished_at or run.started_at).strftime("%Y%m%d_%H%M%S")
    out_path = out_dir / f"{run.kind}_{stamp}_{run.id[:8]}.json"
    _atomic_write_json(out_path, run.to_dict())

    logger.info("Run record saved to %s", out_path)
    return out_path
