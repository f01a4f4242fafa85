"""Tests for the sync pipeline.

Tests cover:
- Validation and title exclusion before normalization
- Per-source failure isolation and error classification
- Upsert failure skipping the staleness sweep
- Run record counters and status, including aborted runs
"""

from datetime import timedelta

import pytest

from conftest import T0, FakeSource, make_posting
from jobcatalog.errors import (
    MalformedSourceError,
    PersistenceError,
    SourceNotFoundError,
    TransientFetchError,
    ValidationError,
)
from jobcatalog.config import SourceConfig
from jobcatalog.models import RawPosting, RunStatus
from jobcatalog.storage import MemoryStore
import jobcatalog.sync as sync_module
from jobcatalog.sync import SyncPipeline, normalize_posting, validate_posting


# ── Posting Validation & Normalization ──────────────────────────────────────


class TestValidatePosting:

    def test_valid(self):
        validate_posting(make_posting("1", "Leasing Manager"))

    def test_missing_title(self):
        with pytest.raises(ValidationError):
            validate_posting(make_posting("1", "   "))

    @pytest.mark.parametrize("url", ["", "/jobs/1", "ftp://example.com/1", "https://"])
    def test_unresolvable_url(self, url):
        with pytest.raises(ValidationError):
            validate_posting(make_posting("1", "Leasing Manager", url=url))


class TestNormalizePosting:

    def test_fields(self):
        raw = RawPosting(
            native_id="42",
            title=" Asset Manager ",
            url="https://boards.greenhouse.io/bgeinc/jobs/42",
            location="Rockville, MD 20850",
            updated_at="2026-02-01T09:30:00Z",
            content="Compensation: $95,000 - $110,000 annually",
            company="bgeinc",
        )
        job = normalize_posting(raw, "greenhouse:bgeinc", {"bgeinc": "BGE, Inc."})

        assert job.fingerprint == "greenhouse:bgeinc::42"
        assert job.title == "Asset Manager"
        assert job.company == "BGE, Inc."
        assert job.company_raw == "bgeinc"
        assert job.location_city == "Rockville"
        assert job.location_state == "MD"
        assert job.has_pay is True
        assert job.pay_extracted.startswith("$95,000 - $110,000")
        assert job.posted_at.year == 2026


# ── Pipeline ────────────────────────────────────────────────────────────────


class TestSyncPipeline:

    def test_excluded_titles_never_stored(self, store, config):
        source = FakeSource("acme", [
            make_posting("1", "Maintenance Technician"),
            make_posting("2", "Leasing Manager"),
        ])
        run = SyncPipeline(config, store, sources=[source]).run(now=T0)

        assert [j.title for j in store.find_jobs()] == ["Leasing Manager"]
        assert run.counters["excluded"] == 1
        assert run.counters["inserted"] == 1
        assert run.status is RunStatus.COMPLETED

    def test_invalid_postings_skipped_not_fatal(self, store, config):
        source = FakeSource("acme", [
            make_posting("1", ""),
            make_posting("2", "Analyst", url="not a url"),
            make_posting("3", "Leasing Manager"),
        ])
        run = SyncPipeline(config, store, sources=[source]).run(now=T0)

        assert run.counters["invalid"] == 2
        assert len(store.find_jobs()) == 1
        assert run.status is RunStatus.COMPLETED

    def test_failing_source_isolated(self, store, config):
        sources = [
            FakeSource("down", error=TransientFetchError("down", "HTTP 503")),
            FakeSource("gone", error=SourceNotFoundError("gone", "HTTP 404")),
            FakeSource("acme", [make_posting("1", "Leasing Manager")]),
        ]
        run = SyncPipeline(config, store, sources=sources).run(now=T0)

        assert all(s.calls == 1 for s in sources)
        assert len(store.find_jobs(source="greenhouse:acme")) == 1
        assert run.counters["errors"] == 2
        assert run.counters["errors_transient"] == 1
        assert run.counters["errors_not_found"] == 1
        assert run.status is RunStatus.COMPLETED_WITH_ERRORS

    def test_unexpected_exception_isolated(self, store, config):
        sources = [
            FakeSource("boom", error=RuntimeError("surprise")),
            FakeSource("acme", [make_posting("1", "Leasing Manager")]),
        ]
        run = SyncPipeline(config, store, sources=sources).run(now=T0)

        assert len(store.find_jobs()) == 1
        assert run.counters["errors_unexpected"] == 1

    def test_failed_source_keeps_previous_rows_active(self, store, config):
        """A fetch failure must not look like every posting vanished."""
        good = FakeSource("acme", [make_posting("1", "Leasing Manager")])
        SyncPipeline(config, store, sources=[good]).run(now=T0)

        bad = FakeSource("acme", error=MalformedSourceError("acme", "bad json"))
        SyncPipeline(config, store, sources=[bad]).run(now=T0 + timedelta(days=1))

        assert store.find_jobs()[0].is_active is True

    def test_empty_fetch_deactivates_everything(self, store, config):
        SyncPipeline(config, store, sources=[
            FakeSource("acme", [make_posting("1", "Leasing Manager")])
        ]).run(now=T0)

        run = SyncPipeline(config, store, sources=[FakeSource("acme", [])]).run(
            now=T0 + timedelta(days=1)
        )

        assert run.counters["deactivated"] == 1
        assert store.find_jobs()[0].is_active is False

    def test_persistence_failure_skips_sweep(self, config):
        class FlakyStore(MemoryStore):
            fail_upserts = False

            def upsert_jobs(self, jobs):
                if self.fail_upserts:
                    raise PersistenceError("store down")
                return super().upsert_jobs(jobs)

        store = FlakyStore()
        SyncPipeline(config, store, sources=[
            FakeSource("acme", [make_posting("1", "A"), make_posting("2", "B")])
        ]).run(now=T0)

        store.fail_upserts = True
        run = SyncPipeline(config, store, sources=[
            FakeSource("acme", [make_posting("1", "A")])
        ]).run(now=T0 + timedelta(days=1))

        assert all(j.is_active for j in store.find_jobs())
        assert run.counters["errors_persistence"] == 1
        assert run.counters.get("deactivated", 0) == 0

    def test_rerun_is_idempotent(self, store, config):
        postings = [make_posting("1", "Leasing Manager"), make_posting("2", "Asset Manager")]
        SyncPipeline(config, store, sources=[FakeSource("acme", postings)]).run(now=T0)
        run = SyncPipeline(config, store, sources=[FakeSource("acme", postings)]).run(
            now=T0 + timedelta(hours=1)
        )

        assert run.counters["inserted"] == 0
        assert run.counters["unchanged"] == 2
        assert len(store.find_jobs()) == 2

    def test_parallel_workers(self, store, config):
        config.max_workers = 4
        sources = [
            FakeSource(f"board{i}", [make_posting(str(n), f"Role {n}") for n in range(5)])
            for i in range(6)
        ]
        run = SyncPipeline(config, store, sources=sources).run(now=T0)

        assert run.counters["sources"] == 6
        assert run.counters["inserted"] == 30
        assert len(store.find_jobs()) == 30

    def test_unknown_source_type_recorded(self, store, config):
        config.sources = [SourceConfig(name="mystery", source_type="lever")]
        pipeline = SyncPipeline(config, store)

        assert pipeline.sources == []
        run = pipeline.run(now=T0)
        assert run.counters["errors"] == 1
        assert store.get_run(run.id).is_finalized

    def test_unexpected_posting_error_isolated(self, store, config, monkeypatch):
        real_normalize = sync_module.normalize_posting

        def flaky_normalize(raw, source_id, overrides=None):
            if raw.native_id == "1":
                raise TypeError("unexpected field type")
            return real_normalize(raw, source_id, overrides)

        monkeypatch.setattr(sync_module, "normalize_posting", flaky_normalize)
        source = FakeSource("acme", [
            make_posting("1", "Leasing Manager"),
            make_posting("2", "Asset Manager"),
        ])
        run = SyncPipeline(config, store, sources=[source]).run(now=T0)

        assert [j.fingerprint for j in store.find_jobs()] == ["greenhouse:acme::2"]
        assert run.counters["invalid"] == 1
        assert run.status is RunStatus.COMPLETED

    def test_aborted_run_is_finalized_failed(self, store, config, monkeypatch):
        pipeline = SyncPipeline(config, store, sources=[FakeSource("acme", [])])

        def crash(source, run_at):
            raise RuntimeError("worker died")

        monkeypatch.setattr(pipeline, "sync_source", crash)
        with pytest.raises(RuntimeError):
            pipeline.run(now=T0)

        [run] = store.list_runs("sync")
        assert run.status is RunStatus.FAILED
        assert run.is_finalized
