"""Tests for the catalog stores.

Tests cover:
- JSON persistence round trip across store instances
- Backup restore when a data file is corrupted
- Ledger claims (no double claim, ledger kept when the write fails)
- Run records (finalized runs are immutable)
"""

import json
import threading
from datetime import timedelta

import pytest

from conftest import T0, make_job
from jobcatalog.errors import PersistenceError
from jobcatalog.models import (
    DeliveryRecord,
    DeliveryStatus,
    RunRecord,
    SavedSearch,
    SearchFilter,
)
from jobcatalog.storage import JsonFileStore, MemoryStore, write_run_artifact


# ── JSON File Store ─────────────────────────────────────────────────────────


class TestJsonFileStore:

    def test_round_trip(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.upsert_jobs([make_job("greenhouse:acme::1", has_pay=True, pay_extracted="$90,000")])
        store.save_search(
            SavedSearch(id="s1", email="a@example.com", filter=SearchFilter(state="MD"))
        )
        store.queue_delivery(DeliveryRecord(search_id="s1", run_id="r1", job_fingerprints=["greenhouse:acme::1"]))
        store.set_watermark("s1", T0)

        reopened = JsonFileStore(tmp_path)
        [job] = reopened.get_jobs(["greenhouse:acme::1"])
        assert job.pay_extracted == "$90,000"
        assert job.updated_at == T0

        search = reopened.get_search("s1")
        assert search.filter.state == "MD"
        assert search.watermark == T0

        assert reopened.delivered_fingerprints("s1") == {"greenhouse:acme::1"}
        [delivery] = reopened.list_deliveries()
        assert delivery.status is DeliveryStatus.QUEUED

    def test_creates_expected_files(self, tmp_path):
        store = JsonFileStore(tmp_path / "data")
        store.upsert_jobs([make_job()])
        assert (tmp_path / "data" / "jobs.json").exists()

    def test_corrupted_file_restored_from_backup(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.upsert_jobs([make_job("greenhouse:acme::1")])
        store.upsert_jobs([make_job("greenhouse:acme::2")])  # leaves a .bak with job 1

        (tmp_path / "jobs.json").write_text("{not json")

        reopened = JsonFileStore(tmp_path)
        assert [j.fingerprint for j in reopened.find_jobs()] == ["greenhouse:acme::1"]
        # Primary file rewritten from the backup
        assert "greenhouse:acme::1" in json.loads((tmp_path / "jobs.json").read_text())

    def test_corrupted_without_backup_refuses_to_load(self, tmp_path):
        (tmp_path / "ledger.json").write_text("[[[")
        with pytest.raises(PersistenceError):
            JsonFileStore(tmp_path)


# ── Ledger ──────────────────────────────────────────────────────────────────


class TestLedger:

    def test_already_claimed_pairs_are_dropped(self, store):
        store.queue_delivery(DeliveryRecord(search_id="s1", run_id="r1", job_fingerprints=["a", "b"]))
        record = store.queue_delivery(
            DeliveryRecord(search_id="s1", run_id="r2", job_fingerprints=["b", "c"])
        )
        assert record.job_fingerprints == ["c"]
        assert store.delivered_fingerprints("s1") == {"a", "b", "c"}

    def test_nothing_left_to_claim(self, store):
        store.queue_delivery(DeliveryRecord(search_id="s1", run_id="r1", job_fingerprints=["a"]))
        assert store.queue_delivery(
            DeliveryRecord(search_id="s1", run_id="r2", job_fingerprints=["a"])
        ) is None
        assert len(store.list_deliveries()) == 1

    def test_ledger_is_per_search(self, store):
        store.queue_delivery(DeliveryRecord(search_id="s1", run_id="r1", job_fingerprints=["a"]))
        record = store.queue_delivery(DeliveryRecord(search_id="s2", run_id="r1", job_fingerprints=["a"]))
        assert record is not None

    def test_concurrent_claims_never_overlap(self, store):
        """Racing threads claim each (search, job) pair exactly once."""
        fingerprints = [f"fp{i}" for i in range(50)]
        claimed: list[str] = []
        lock = threading.Lock()

        def worker():
            record = store.queue_delivery(
                DeliveryRecord(search_id="s1", run_id="r", job_fingerprints=list(fingerprints))
            )
            if record is not None:
                with lock:
                    claimed.extend(record.job_fingerprints)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(claimed) == sorted(fingerprints)
        assert len(store.list_deliveries()) == 1

    def test_failed_ledger_write_releases_claim(self):
        class FailingLedgerStore(MemoryStore):
            def _changed(self, collection):
                if collection == "ledger":
                    raise PersistenceError("ledger unwritable")

        store = FailingLedgerStore()
        with pytest.raises(PersistenceError):
            store.queue_delivery(DeliveryRecord(search_id="s1", run_id="r1", job_fingerprints=["a"]))
        assert store.delivered_fingerprints("s1") == set()
        assert store.list_deliveries() == []


# ── Catalog Reads ───────────────────────────────────────────────────────────


class TestFindJobs:

    def test_filters_and_order(self, store):
        store.upsert_jobs([
            make_job("greenhouse:acme::1", last_seen_at=T0),
            make_job("greenhouse:acme::2", last_seen_at=T0 + timedelta(hours=2)),
            make_job("greenhouse:beta::1", source="greenhouse:beta", last_seen_at=T0 + timedelta(hours=1)),
        ])
        rows = store.find_jobs()
        assert [j.fingerprint for j in rows] == [
            "greenhouse:acme::2", "greenhouse:beta::1", "greenhouse:acme::1",
        ]
        assert len(store.find_jobs(source="greenhouse:beta")) == 1
        changed = store.find_jobs(changed_since=T0 + timedelta(hours=1))
        assert {j.fingerprint for j in changed} == {"greenhouse:acme::2", "greenhouse:beta::1"}

    def test_get_jobs_skips_unknown(self, store):
        store.upsert_jobs([make_job("greenhouse:acme::1")])
        assert len(store.get_jobs(["greenhouse:acme::1", "nope"])) == 1

    def test_failed_write_rolls_back_upsert(self):
        class FailingJobsStore(MemoryStore):
            fail = False

            def _changed(self, collection):
                if self.fail and collection == "jobs":
                    raise PersistenceError("jobs unwritable")

        store = FailingJobsStore()
        store.upsert_jobs([make_job("greenhouse:acme::1")])
        store.fail = True
        with pytest.raises(PersistenceError):
            store.upsert_jobs([
                make_job("greenhouse:acme::1", title="Changed"),
                make_job("greenhouse:acme::2"),
            ])
        assert [j.title for j in store.find_jobs()] == ["Leasing Manager"]


# ── Runs ────────────────────────────────────────────────────────────────────


class TestRuns:

    def test_finalized_run_cannot_change(self, store):
        run = RunRecord(kind="sync", started_at=T0)
        store.save_run(run)
        run.incr("fetched", 3)
        run.finish()
        store.save_run(run)

        run.incr("fetched")
        with pytest.raises(PersistenceError):
            store.save_run(run)
        assert store.get_run(run.id).counters["fetched"] == 3

    def test_stored_copy_is_detached(self, store):
        run = RunRecord(kind="alerts", started_at=T0)
        store.save_run(run)
        run.incr("errors")
        assert store.get_run(run.id).counters == {}

    def test_list_runs_by_kind(self, store):
        store.save_run(RunRecord(kind="sync", started_at=T0))
        store.save_run(RunRecord(kind="alerts", started_at=T0))
        assert [r.kind for r in store.list_runs("sync")] == ["sync"]

    def test_write_run_artifact(self, tmp_path):
        run = RunRecord(kind="sync", started_at=T0)
        run.finish()
        path = write_run_artifact(run, tmp_path)
        assert path.parent == tmp_path / "runs"
        assert path.name.startswith("sync_")
        assert json.loads(path.read_text())["status"] == "completed"
