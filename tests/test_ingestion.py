"""
Tests for the ingestion coordinator.

Covers merge rules, bulk ingest (single-flight, timeouts, failures),
metadata capture, the debounced visit trigger and first-run state.
"""

import threading

import pytest

from smriti.config import IngestConfig
from smriti.errors import HistorySourceError, InvalidURLError
from smriti.ingestion import (
    IngestionCoordinator,
    IngestReport,
    _call_with_timeout,
    merge_history_record,
    merge_metadata_fields,
    normalize_keywords,
)
from smriti.scheduling import EventChannel
from smriti.types import HistoryRecord, IndexedItem, VisitEvent

from tests.conftest import (
    CountingHistorySource,
    FailingHistorySource,
    HangingHistorySource,
    record,
    wait_until,
)

URL = "https://ex.com/a"


# ---------------------------------------------------------------------------
# Merge rules
# ---------------------------------------------------------------------------


class TestMergeHistoryRecord:
    def test_new_item(self):
        item = merge_history_record(
            None, record(URL, "Rust Guide", 3, 100), url=URL, hostname="ex.com", now_ms=999,
        )
        assert item.title == "Rust Guide"
        assert item.visit_count == 3
        assert item.last_visit == 100
        assert item.hostname == "ex.com"

    def test_new_item_without_time_uses_now(self):
        item = merge_history_record(None, record(URL), url=URL, hostname="ex.com", now_ms=999)
        assert item.last_visit == 999

    def test_new_item_visit_count_at_least_one(self):
        item = merge_history_record(None, record(URL, visits=0), url=URL, hostname="ex.com", now_ms=1)
        assert item.visit_count == 1

    def test_counters_never_decrease(self):
        existing = IndexedItem(url=URL, title="New", visit_count=5, last_visit=200)
        merged = merge_history_record(
            existing, record(URL, "Old", 2, 100), url=URL, hostname="ex.com", now_ms=999,
        )
        assert merged.visit_count == 5
        assert merged.last_visit == 200

    def test_title_follows_newest_visit(self):
        existing = IndexedItem(url=URL, title="Old", visit_count=1, last_visit=100)
        newer = merge_history_record(
            existing, record(URL, "New", 2, 200), url=URL, hostname="ex.com", now_ms=999,
        )
        assert newer.title == "New"
        older = merge_history_record(
            newer, record(URL, "Stale", 2, 150), url=URL, hostname="ex.com", now_ms=999,
        )
        assert older.title == "New"

    def test_empty_title_does_not_clear(self):
        existing = IndexedItem(url=URL, title="Keep", last_visit=100)
        merged = merge_history_record(
            existing, record(URL, "", 1, 200), url=URL, hostname="ex.com", now_ms=999,
        )
        assert merged.title == "Keep"

    def test_metadata_carried_over(self):
        existing = IndexedItem(url=URL, meta_description="d", meta_keywords=("lang",))
        merged = merge_history_record(
            existing, record(URL, "T", 1, 5), url=URL, hostname="ex.com", now_ms=999,
        )
        assert merged.meta_description == "d"
        assert merged.meta_keywords == ("lang",)
        assert "lang" in merged.tokens

    def test_stub_gets_now_when_record_has_no_time(self):
        stub = IndexedItem(url=URL, visit_count=1, last_visit=0)
        merged = merge_history_record(stub, record(URL, "T"), url=URL, hostname="ex.com", now_ms=777)
        assert merged.last_visit == 777
        assert merged.title == "T"


class TestMergeMetadataFields:
    def test_stub(self):
        item = merge_metadata_fields(
            None, url=URL, hostname="ex.com", description="d", keywords=["k"],
        )
        assert item.title == ""
        assert item.visit_count == 1
        assert item.last_visit == 0
        assert item.meta_keywords == ("k",)

    def test_keywords_union_in_order(self):
        existing = IndexedItem(url=URL, meta_keywords=("a", "b"))
        merged = merge_metadata_fields(
            existing, url=URL, hostname="ex.com", description=None, keywords=["b", "c"],
        )
        assert merged.meta_keywords == ("a", "b", "c")

    def test_description_overwrites_only_when_given(self):
        existing = IndexedItem(url=URL, meta_description="first")
        kept = merge_metadata_fields(
            existing, url=URL, hostname="ex.com", description=None, keywords=[],
        )
        assert kept.meta_description == "first"
        replaced = merge_metadata_fields(
            existing, url=URL, hostname="ex.com", description="second", keywords=[],
        )
        assert replaced.meta_description == "second"


class TestNormalizeKeywords:
    def test_strips_and_dedupes(self):
        assert normalize_keywords([" a", "b ", "a", "", "  "]) == ["a", "b"]

    def test_comma_separated_string(self):
        assert normalize_keywords("rust, lang ,rust") == ["rust", "lang"]

    def test_ignores_non_strings(self):
        assert normalize_keywords(["a", 3, None]) == ["a"]

    def test_none(self):
        assert normalize_keywords(None) == []


class TestCallWithTimeout:
    def test_returns_result(self):
        assert _call_with_timeout(lambda: 42, 1.0) == 42

    def test_reraises_error(self):
        def boom():
            raise KeyError("x")
        with pytest.raises(KeyError):
            _call_with_timeout(boom, 1.0)

    def test_times_out(self):
        release = threading.Event()
        with pytest.raises(TimeoutError):
            _call_with_timeout(release.wait, 0.05)
        release.set()


# ---------------------------------------------------------------------------
# Bulk ingest
# ---------------------------------------------------------------------------


class TestIngestHistory:
    def test_scenario_ingest_then_store(self, coordinator, history, store):
        history.records = [record(URL, "Rust Guide", 3, 1000)]
        report = coordinator.ingest_history()
        assert isinstance(report, IngestReport)
        assert report.fetched == 1
        assert report.created == 1
        item = store.get(URL)
        assert item.title == "Rust Guide"
        assert item.visit_count == 3
        assert item.hostname == "ex.com"

    def test_bad_url_skipped_not_fatal(self, coordinator, history, store):
        history.records = [
            record("not a url", "Bad", 1, 3),
            record(URL, "Good", 1, 2),
            record("", "Empty", 1, 1),
        ]
        report = coordinator.ingest_history()
        assert len(report.skipped) == 2
        assert report.created == 1
        assert store.count() == 1

    def test_rerun_is_idempotent(self, coordinator, history, store):
        history.records = [record(URL, "A", 2, 10), record("https://ex.com/b", "B", 1, 5)]
        coordinator.ingest_history()
        before = {i.url: i for i in store.scan()}
        report = coordinator.ingest_history()
        after = {i.url: i for i in store.scan()}
        assert report.unchanged == 2
        assert report.written == 0
        assert before == after

    def test_duplicate_urls_in_one_pass(self, coordinator, history, store):
        history.records = [record(URL, "Newer", 4, 20), record(URL, "Older", 7, 10)]
        coordinator.ingest_history()
        assert store.count() == 1
        item = store.get(URL)
        assert item.visit_count == 7
        assert item.last_visit == 20
        assert item.title == "Newer"

    def test_monotonic_across_passes(self, coordinator, history, store):
        seen = []
        for visits, last in [(3, 100), (1, 50), (5, 300), (2, 200)]:
            history.records = [record(URL, "T", visits, last)]
            coordinator.ingest_history()
            item = store.get(URL)
            seen.append((item.visit_count, item.last_visit))
        assert seen == sorted(seen)
        assert seen[-1] == (5, 300)

    def test_window_limits_records(self, store, history):
        history.records = [record(f"https://ex.com/{n}", "T", 1, n) for n in range(1, 11)]
        c = IngestionCoordinator(store, history, IngestConfig(history_window=3))
        report = c.ingest_history()
        assert report.fetched == 3
        assert store.count() == 3
        c.close()

    def test_records_last_ingest_time(self, store, history):
        c = IngestionCoordinator(store, history, IngestConfig(), clock=lambda: 12345)
        c.ingest_history()
        assert store.get_state().last_ingest_at == 12345
        c.close()

    def test_history_failure_propagates(self, store):
        c = IngestionCoordinator(store, FailingHistorySource(), IngestConfig())
        with pytest.raises(HistorySourceError):
            c.ingest_history()
        assert store.get_state().last_ingest_at is None
        c.close()

    def test_unexpected_history_error_wrapped(self, store):
        c = IngestionCoordinator(store, FailingHistorySource(RuntimeError("boom")), IngestConfig())
        with pytest.raises(HistorySourceError, match="boom"):
            c.ingest_history()
        c.close()

    def test_timeout_degrades_to_no_items(self, store):
        hanging = HangingHistorySource()
        c = IngestionCoordinator(store, hanging, IngestConfig(history_timeout=0.05))
        try:
            report = c.ingest_history()
            assert report.timed_out
            assert report.fetched == 0
            assert store.count() == 0
            assert store.get_state().last_ingest_at is None
        finally:
            hanging.release.set()
            c.close()

    def test_previous_items_survive_failure(self, store, history):
        history.records = [record(URL, "T", 1, 1)]
        c = IngestionCoordinator(store, history, IngestConfig())
        c.ingest_history()
        c._history = FailingHistorySource()
        with pytest.raises(HistorySourceError):
            c.ingest_history()
        assert store.get(URL).title == "T"
        c.close()


class TestSingleFlight:
    def test_concurrent_ingests_share_one_pass(self, store):
        history = CountingHistorySource([record(URL, "T", 1, 1)], delay=0.2)
        c = IngestionCoordinator(store, history, IngestConfig())
        reports = []

        def run():
            reports.append(c.ingest_history())

        first = threading.Thread(target=run)
        first.start()
        assert history.started.wait(2)
        assert c.ingest_in_flight
        second = threading.Thread(target=run)
        second.start()
        first.join()
        second.join()

        assert history.calls == 1
        assert reports[0] is reports[1]
        assert not c.ingest_in_flight
        c.close()

    def test_many_concurrent_callers(self, store):
        history = CountingHistorySource([record(URL, "T", 1, 1)], delay=0.2)
        c = IngestionCoordinator(store, history, IngestConfig())
        threads = [threading.Thread(target=c.ingest_history) for _ in range(8)]
        threads[0].start()
        assert history.started.wait(2)
        for t in threads[1:]:
            t.start()
        for t in threads:
            t.join()
        assert history.calls == 1
        c.close()

    def test_fresh_queues_behind_in_flight(self, store):
        history = CountingHistorySource([record(URL, "T", 1, 1)], delay=0.2)
        c = IngestionCoordinator(store, history, IngestConfig())
        first = threading.Thread(target=c.ingest_history)
        first.start()
        assert history.started.wait(2)
        history.records = [record(URL, "Later", 2, 2)]
        c.ingest_history(fresh=True)
        first.join()
        assert history.calls == 2
        assert store.get(URL).title == "Later"
        c.close()


# ---------------------------------------------------------------------------
# Record import
# ---------------------------------------------------------------------------


class TestIngestRecords:
    def test_accepts_mappings(self, coordinator, store, history):
        report = coordinator.ingest_records([
            {"url": URL, "title": "Rust", "visitCount": 2, "lastVisitTime": 10},
            HistoryRecord("https://ex.com/b", "B", 1, 5),
            {"url": "bad url"},
        ])
        assert report.fetched == 3
        assert report.created == 2
        assert len(report.skipped) == 1
        assert store.get(URL).visit_count == 2
        assert history.calls == 0


# ---------------------------------------------------------------------------
# Metadata merge
# ---------------------------------------------------------------------------


class TestMergeMetadata:
    def test_same_capture_twice_is_idempotent(self, coordinator, store):
        once = coordinator.merge_metadata(URL, keywords=["lang"])
        twice = coordinator.merge_metadata(URL, keywords=["lang"])
        assert twice == once
        assert store.get(URL).meta_keywords == ("lang",)

    def test_stub_then_ingest_enriches(self, coordinator, history, store):
        coordinator.merge_metadata(URL, description="All about Rust", keywords=["lang"])
        stub = store.get(URL)
        assert stub.title == ""
        assert stub.visit_count == 1
        assert stub.last_visit == 0

        history.records = [record(URL, "Rust Guide", 3, 1000)]
        coordinator.ingest_history()
        item = store.get(URL)
        assert item.title == "Rust Guide"
        assert item.visit_count == 3
        assert item.last_visit == 1000
        assert item.meta_description == "All about Rust"
        assert item.meta_keywords == ("lang",)
        assert {"rust", "guide", "lang", "about"} <= set(item.tokens)

    def test_keywords_only_grow(self, coordinator, store):
        coordinator.merge_metadata(URL, keywords=["a", "b"])
        coordinator.merge_metadata(URL, keywords=["c"])
        coordinator.merge_metadata(URL, keywords=[])
        assert store.get(URL).meta_keywords == ("a", "b", "c")

    def test_blank_description_keeps_existing(self, coordinator, store):
        coordinator.merge_metadata(URL, description="First")
        coordinator.merge_metadata(URL, description="   ")
        assert store.get(URL).meta_description == "First"

    def test_invalid_url(self, coordinator, store):
        with pytest.raises(InvalidURLError):
            coordinator.merge_metadata("not a url", keywords=["x"])
        assert store.count() == 0

    def test_canonicalized_keys(self, store, history):
        c = IngestionCoordinator(store, history, IngestConfig(canonicalize_urls=True))
        c.merge_metadata("HTTPS://Ex.com:443/a", keywords=["k"])
        history.records = [record("https://ex.com/a", "T", 1, 1)]
        c.ingest_history()
        assert store.list_urls() == ["https://ex.com/a"]
        assert store.get("https://ex.com/a").meta_keywords == ("k",)
        c.close()

    def test_concurrent_capture_and_ingest_lose_nothing(self, store):
        """Metadata merges racing bulk passes on the same URL keep every field."""
        history = CountingHistorySource([record(URL, "Rust Guide", 9, 5000)], delay=0.01)
        c = IngestionCoordinator(store, history, IngestConfig())
        keywords = [f"kw{n}" for n in range(40)]

        def capture(chunk):
            for kw in chunk:
                c.merge_metadata(URL, keywords=[kw])

        def ingest():
            for _ in range(5):
                c.ingest_history(fresh=True)

        threads = [threading.Thread(target=capture, args=(keywords[i::4],)) for i in range(4)]
        threads.append(threading.Thread(target=ingest))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        item = store.get(URL)
        assert set(item.meta_keywords) == set(keywords)
        assert item.title == "Rust Guide"
        assert item.visit_count == 9
        assert item.last_visit == 5000
        assert item.tokens == tuple(item.derive_tokens())
        c.close()


# ---------------------------------------------------------------------------
# Debounced visits
# ---------------------------------------------------------------------------


class TestVisits:
    def test_burst_of_visits_runs_one_ingest(self, history, store):
        history.records = [record(URL, "T", 1, 1)]
        c = IngestionCoordinator(store, history, IngestConfig(debounce_seconds=0.2))
        for _ in range(10):
            c.on_visited(VisitEvent(URL, "T"))
        assert c.ingest_pending
        assert history.calls == 0
        assert wait_until(lambda: history.calls == 1)
        assert wait_until(lambda: not c.ingest_pending)
        threading.Event().wait(0.3)
        assert history.calls == 1
        assert store.get(URL) is not None
        c.close()

    def test_flush_runs_pending_now(self, store, history):
        c = IngestionCoordinator(store, history, IngestConfig(debounce_seconds=60))
        c.on_visited(VisitEvent(URL))
        assert history.calls == 0
        assert c.flush() is True
        assert history.calls == 1
        assert c.flush() is False
        c.close()

    def test_close_cancels_pending(self, store, history):
        c = IngestionCoordinator(store, history, IngestConfig(debounce_seconds=0.05))
        c.on_visited(VisitEvent(URL))
        c.close()
        threading.Event().wait(0.15)
        assert history.calls == 0

    def test_close_waits_for_running_pass(self, store):
        history = CountingHistorySource([record(URL, "T", 1, 1)], delay=0.3)
        c = IngestionCoordinator(store, history, IngestConfig(debounce_seconds=60))
        reports = []
        t = threading.Thread(target=lambda: reports.append(c.ingest_history()))
        t.start()
        assert history.started.wait(1)
        c.close()
        assert not c.ingest_in_flight
        assert store.get(URL) is not None
        t.join()
        assert reports[0].created == 1

    def test_attach_visit_channel(self, coordinator, history):
        channel = EventChannel()
        coordinator.attach_visits(channel)
        channel.put(VisitEvent(URL))
        channel.put(VisitEvent("https://ex.com/b"))
        assert wait_until(lambda: history.calls == 1)
        channel.close()

    def test_failed_debounced_ingest_is_logged(self, store, caplog):
        c = IngestionCoordinator(store, FailingHistorySource(), IngestConfig(debounce_seconds=0.01))
        c.on_visited(VisitEvent(URL))
        assert wait_until(lambda: "action failed" in caplog.text)
        c.close()


# ---------------------------------------------------------------------------
# First-run state
# ---------------------------------------------------------------------------


class TestEnsureIndexed:
    def test_first_run_then_skip(self, coordinator, history, store):
        history.records = [record(URL, "T", 1, 1)]
        assert coordinator.ensure_indexed("1.0") is True
        state = store.get_state()
        assert state.indexed_once
        assert state.last_indexed_version == "1.0"
        assert coordinator.ensure_indexed("1.0") is False
        assert history.calls == 1

    def test_version_change_reindexes(self, coordinator, history, store):
        coordinator.ensure_indexed("1.0")
        assert coordinator.ensure_indexed("2.0") is True
        assert store.get_state().last_indexed_version == "2.0"
        assert history.calls == 2

    def test_timeout_not_recorded(self, store):
        hanging = HangingHistorySource()
        c = IngestionCoordinator(store, hanging, IngestConfig(history_timeout=0.05))
        try:
            assert c.ensure_indexed("1.0") is True
            assert store.get_state().indexed_once is False
        finally:
            hanging.release.set()
            c.close()

    def test_failure_not_recorded(self, store):
        c = IngestionCoordinator(store, FailingHistorySource(), IngestConfig())
        with pytest.raises(HistorySourceError):
            c.ensure_indexed("1.0")
        assert store.get_state().indexed_once is False
        c.close()
