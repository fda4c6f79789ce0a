"""Run coordinator: batching, lock contention, continuation and resume."""

from __future__ import annotations

import json

import pytest

from busroutes.coordinator import (
    STATUS_COMPLETE,
    STATUS_CONTINUED,
    STATUS_LOCKED,
    RunCoordinator,
)
from busroutes.generative import GenerativeExtractor
from busroutes.geocoding import GeocodingCache
from busroutes.models import ConfigurationError
from busroutes.publisher import Publisher
from busroutes.structured import StructuredTextExtractor
from busroutes.utils import (
    GOOGLE_DOC_MIME,
    PDF_MIME,
    ContinuationScheduler,
    JsonStateRepository,
    RunLock,
    now_ms,
)

from conftest import (
    DAY_MS,
    SAMPLE_SHEET_LINES,
    FakeGenerativeClient,
    FakeGeocoder,
    FakeOcr,
    make_docs_document,
)


def _gemini_response(prompt: str) -> str:
    school = "GUILFORD PARK" if "GUILFORD" in prompt else "TOWSON HIGH"
    return json.dumps(
        [
            {
                "busNumber": "",
                "schoolName": school,
                "stops": [{"time": "2:55 PM", "location": f"{school} Annex, 10 York Rd"}],
            }
        ]
    )


class Harness:
    """Coordinator wired to in-memory fakes plus a real state file and lock."""

    def __init__(self, tmp_path, store, policy, batch_size=2, ocr=None, client=None):
        self.store = store
        self.ocr = ocr or FakeOcr()
        self.client = client or FakeGenerativeClient(_gemini_response)
        self.geocoder = FakeGeocoder()
        self.state_repo = JsonStateRepository(tmp_path / "state" / "pipeline_state.json")
        self.lock_path = tmp_path / "state" / "pipeline_state.lock"
        self.scheduler = ContinuationScheduler()
        self.validate_calls = 0
        self.coordinator = RunCoordinator(
            store=store,
            state_repo=self.state_repo,
            lock=RunLock(self.lock_path, timeout_s=0),
            scheduler=self.scheduler,
            structured=StructuredTextExtractor(),
            generative=GenerativeExtractor(self.ocr, self.client, policy=policy),
            geocoding=lambda state: GeocodingCache(
                self.geocoder,
                state.geocode_cache,
                region_suffix="Baltimore County, MD",
                delay_s=0,
                policy=policy,
            ),
            publisher=Publisher(store, "dest"),
            reg_ed_folder_id="reg",
            spec_ed_folder_id="spec",
            batch_size=batch_size,
            recency_days=30,
            continuation_delay_s=60,
            validate=self._validate,
        )

    def _validate(self):
        self.validate_calls += 1

    @property
    def external_calls(self) -> int:
        return (
            len(self.ocr.calls)
            + len(self.client.calls)
            + len(self.geocoder.calls)
            + len(self.store.document_reads)
        )


@pytest.fixture
def populated_store(fake_store):
    now = now_ms()
    fake_store.add_file(
        "d1",
        "105 PINE GROVE",
        "reg",
        GOOGLE_DOC_MIME,
        now - 3 * DAY_MS,
        document=make_docs_document("105 PINE GROVE", SAMPLE_SHEET_LINES),
    )
    fake_store.add_folder("f21", "21", "spec")
    fake_store.add_file("p1", "021 GUILFORD PARK.pdf", "f21", PDF_MIME, now - DAY_MS)
    fake_store.add_folder("f7", "7", "spec")
    fake_store.add_file("p2", "007 TOWSON HIGH.pdf", "f7", PDF_MIME, now - 2 * DAY_MS)
    return fake_store


def test_batches_continue_until_queue_exhausted(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=2)

    first = h.coordinator.run()
    assert first.status == STATUS_CONTINUED
    assert (first.processed, first.cursor, first.queue_size) == (2, 2, 3)
    assert h.scheduler.pending
    saved = h.state_repo.load()
    assert saved.cursor == 2
    assert [i.source_id for i in saved.queue] == ["p1", "p2", "d1"]

    second = h.coordinator.run()
    assert second.status == STATUS_COMPLETE
    assert second.processed == 1
    assert not h.scheduler.pending

    final = h.state_repo.load()
    assert final.queue == []
    assert final.cursor == 0
    assert set(final.processed) == {"p1", "p2", "d1"}
    assert set(populated_store.written) == {
        "dest/021/GUILFORD PARK (PM).json",
        "dest/007/TOWSON HIGH (PM).json",
        "dest/105/PINE GROVE (AM).json",
        "dest/105/PINE GROVE (PM).json",
    }


def test_unchanged_documents_are_skipped(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10)
    assert h.coordinator.run().status == STATUS_COMPLETE
    calls_after_first = h.external_calls
    assert calls_after_first > 0

    rerun = h.coordinator.run()
    assert rerun.status == STATUS_COMPLETE
    assert rerun.processed == 0
    assert rerun.skipped == 3
    assert h.external_calls == calls_after_first


def test_skips_do_not_consume_batch_budget(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10)
    h.coordinator.run()

    # Touch the oldest document; the two queued ahead of it are unchanged.
    node = populated_store.nodes["d1"]
    entry = node["entry"]
    populated_store.add_file(
        "d1",
        entry.name,
        "reg",
        GOOGLE_DOC_MIME,
        entry.modified_ms + 1000,
        document=node["document"],
    )

    h.coordinator.batch_size = 1
    summary = h.coordinator.run()
    assert summary.status == STATUS_COMPLETE
    assert summary.processed == 1
    assert summary.skipped == 2
    assert not h.scheduler.pending


def test_modified_document_is_reprocessed_and_overwritten(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10)
    h.coordinator.run()
    node = populated_store.nodes["p1"]["entry"]
    populated_store.add_file("p1", node.name, "f21", PDF_MIME, node.modified_ms + 1000)

    summary = h.coordinator.run()
    assert summary.processed == 1
    assert len(populated_store.written) == 4
    meta = populated_store.written["dest/021/GUILFORD PARK (PM).json"]["meta"]
    assert meta["sourceFingerprint"] == h.state_repo.load().processed["p1"]


def test_item_failure_does_not_stop_batch(tmp_path, populated_store, fast_policy):
    ocr = FakeOcr(texts={"p1": ValueError("corrupt pdf")})
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10, ocr=ocr)

    summary = h.coordinator.run()
    assert summary.failed == 1
    assert summary.processed == 2
    state = h.state_repo.load()
    assert "p1" not in state.processed
    assert {"p2", "d1"} <= set(state.processed)

    # The failed item is retried once the queue is rebuilt.
    h.ocr.texts.clear()
    retry = h.coordinator.run()
    assert retry.processed == 1
    assert "p1" in h.state_repo.load().processed


def test_empty_extraction_is_left_for_later(tmp_path, populated_store, fast_policy):
    client = FakeGenerativeClient("[]")
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10, client=client)
    summary = h.coordinator.run()
    assert summary.failed == 2
    assert summary.processed == 1
    assert set(h.state_repo.load().processed) == {"d1"}


def test_geocode_cache_persists_across_runs(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy, batch_size=10)
    h.coordinator.run()
    cache = h.state_repo.load().geocode_cache
    assert "guilford park annex, 10 york rd, baltimore county, md" in cache

    stop = populated_store.written["dest/021/GUILFORD PARK (PM).json"]["stops"][0]
    assert (stop["latitude"], stop["longitude"]) == (39.12345, -76.54321)


def test_lock_contention_exits_without_work(tmp_path, populated_store, fast_policy):
    h = Harness(tmp_path, populated_store, fast_policy)
    with RunLock(h.lock_path, timeout_s=0).acquire() as held:
        assert held
        summary = h.coordinator.run()

    assert summary.status == STATUS_LOCKED
    assert h.validate_calls == 0
    assert h.external_calls == 0
    assert not h.state_repo.path.exists()


def test_configuration_error_aborts_before_state_changes(tmp_path, fake_store, fast_policy):
    h = Harness(tmp_path, fake_store, fast_policy)

    def _fail():
        raise ConfigurationError("Destination folder not found")

    h.coordinator.validate = _fail
    with pytest.raises(ConfigurationError):
        h.coordinator.run()
    assert not h.state_repo.path.exists()
    assert not h.scheduler.pending


def test_missing_source_folder_raises(tmp_path, fake_store, fast_policy):
    h = Harness(tmp_path, fake_store, fast_policy)
    h.coordinator.spec_ed_folder_id = "missing"
    with pytest.raises(ConfigurationError):
        h.coordinator.run()


def test_empty_sources_complete_immediately(tmp_path, fake_store, fast_policy):
    h = Harness(tmp_path, fake_store, fast_policy)
    summary = h.coordinator.run()
    assert summary.status == STATUS_COMPLETE
    assert summary.queue_size == 0
    assert not h.scheduler.pending
