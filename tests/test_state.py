from __future__ import annotations

import json

from busroutes.models import (
    PipelineState,
    RouteType,
    StopRecord,
    StudentRecord,
    WorkItem,
    fingerprint,
)
from busroutes.utils import ContinuationScheduler, JsonStateRepository, RunLock


def _item(source_id: str = "doc-1", modified: int = 1000) -> WorkItem:
    return WorkItem(
        route_type=RouteType.SPEC_ED_PDF,
        source_id=source_id,
        source_name=f"{source_id}.pdf",
        last_modified_ms=modified,
        bus_number_hint="21",
    )


def test_fingerprint_changes_with_modification_time():
    assert fingerprint("a", 1) == fingerprint("a", 1)
    assert fingerprint("a", 1) != fingerprint("a", 2)
    assert fingerprint("a", 1) != fingerprint("b", 1)
    assert _item().fingerprint == fingerprint("doc-1", 1000)


def test_work_item_serializes_with_wire_keys():
    data = _item().to_dict()
    assert data["routeType"] == "SpecEdPdf"
    assert data["busNumberHint"] == "21"
    assert WorkItem.from_dict(data) == _item()


def test_stop_record_omits_missing_coordinates():
    stop = StopRecord(time="6:42 AM", location="123 Main St", students=[StudentRecord(name="A")])
    data = stop.to_dict()
    assert "latitude" not in data
    assert "longitude" not in data
    assert data["students"][0] == {
        "name": "A",
        "contactName": "",
        "phoneNumber": "",
        "otherEquipment": "",
    }

    stop.latitude, stop.longitude = 39.1, -76.5
    assert stop.to_dict()["latitude"] == 39.1


def test_stop_key_ignores_case_and_spacing():
    a = StopRecord(time="6:42 a.m.", location="123  Main St")
    b = StopRecord(time="6:42 AM", location="123 MAIN ST")
    assert a.key() == b.key()


def test_is_current_requires_matching_fingerprint():
    state = PipelineState()
    item = _item()
    assert state.is_current(item) is False
    state.mark_processed(item)
    assert state.is_current(item) is True
    assert state.is_current(_item(modified=2000)) is False


def test_state_repair_clamps_cursor_and_drops_bad_entries():
    raw = {
        "queue": [_item().to_dict(), {"routeType": "Nope", "sourceId": "x"}, "junk"],
        "cursor": 99,
        "processed": ["not", "a", "dict"],
        "geocodeCache": {
            "123 main st, baltimore county, md": {"lat": 39.1, "lng": -76.5},
            "broken": {"lat": 1.0},
            "not-a-number": {"lat": "x", "lng": 1},
            "not-a-dict": [1, 2],
        },
    }
    state = PipelineState.from_dict(raw)
    assert len(state.queue) == 1
    assert state.cursor == 1
    assert state.exhausted
    assert state.processed == {}
    assert list(state.geocode_cache) == ["123 main st, baltimore county, md"]


def test_state_repair_handles_non_dict_document():
    state = PipelineState.from_dict(["unexpected"])
    assert state.queue == []
    assert state.cursor == 0


def test_state_roundtrip(tmp_path):
    repo = JsonStateRepository(tmp_path / "state" / "pipeline_state.json")
    state = PipelineState(queue=[_item("a"), _item("b")], cursor=1)
    state.mark_processed(_item("a"))
    state.geocode_cache["x"] = {"lat": 1.0, "lng": 2.0}
    repo.save(state)

    loaded = repo.load()
    assert [i.source_id for i in loaded.queue] == ["a", "b"]
    assert loaded.cursor == 1
    assert loaded.is_current(_item("a"))
    assert loaded.geocode_cache == {"x": {"lat": 1.0, "lng": 2.0}}

    # No temp files are left beside the state document.
    assert [p.name for p in repo.path.parent.iterdir()] == ["pipeline_state.json"]


def test_load_state_handles_invalid_json(tmp_path):
    path = tmp_path / "pipeline_state.json"
    path.write_text("{invalid json", encoding="utf-8")
    state = JsonStateRepository(path).load()
    assert state.queue == []
    assert state.geocode_cache == {}


def test_load_state_missing_file_starts_fresh(tmp_path):
    state = JsonStateRepository(tmp_path / "missing.json").load()
    assert state.exhausted


def test_run_lock_is_exclusive(tmp_path):
    path = tmp_path / "run.lock"
    with RunLock(path, timeout_s=0).acquire() as first:
        assert first is True
        with RunLock(path, timeout_s=0.2, poll_s=0.05).acquire() as second:
            assert second is False
    with RunLock(path, timeout_s=0).acquire() as again:
        assert again is True


def test_continuation_marker_survives_process(tmp_path):
    marker = tmp_path / "continuation.json"
    scheduler = ContinuationScheduler(marker)
    assert scheduler.pending is False

    scheduler.schedule(60)
    assert scheduler.pending
    assert json.loads(marker.read_text(encoding="utf-8"))["dueAt"] > 0
    assert 0 < ContinuationScheduler(marker).seconds_until_due() <= 60

    scheduler.cancel()
    assert not marker.exists()
    assert ContinuationScheduler(marker).pending is False


def test_in_memory_scheduler_without_marker():
    scheduler = ContinuationScheduler()
    scheduler.schedule(0)
    assert scheduler.pending
    assert scheduler.seconds_until_due() == 0.0
    scheduler.cancel()
    assert not scheduler.pending
