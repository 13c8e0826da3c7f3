from itertools import count

from crmdq.storage.history import ACTIONS_KEY, ActionLog, FailureLog, ScanHistory
from crmdq.storage.kv import FileStore, MemoryStore
from crmdq.storage.models import ActionType, CreateInput, PatchInput, PatchUndo, RecreatePayload, RecreateUndo


def _clock(start=1000):
    ticks = count(start)
    return lambda: next(ticks)


def test_undo_returns_stored_payload_once(store):
    log = ActionLog(store, clock=_clock())
    undo = RecreateUndo(
        payload=RecreatePayload(
            patch=[PatchInput(id="p", fields={"email": "p@x.com"})],
            create=[CreateInput(fields={"email": "m@x.com", "phone": None})],
        )
    )
    action = log.record(ActionType.MERGED, "p", payload={"mergeIds": ["m"]}, undo_payload=undo)

    assert log.undo(action.id) == undo
    reloaded = ActionLog(store).get(action.id)
    assert reloaded.undone
    assert reloaded.undone_ts is not None
    assert log.undo(action.id) is None


def test_undo_unknown_or_without_payload_is_none(store):
    log = ActionLog(store)
    plain = log.record("rejected", "p", payload={"sourceId": "x"})
    assert log.undo(plain.id) is None
    assert log.undo("missing") is None
    assert not log.get(plain.id).undone


def test_undo_payload_accepts_plain_mapping(store):
    log = ActionLog(store)
    action = log.record(
        "updated", "contacts", undo_payload={"action": "patch", "payload": [{"id": "1", "fields": {"email": "a"}}]}
    )
    undo = log.undo(action.id)
    assert isinstance(undo, PatchUndo)
    assert undo.payload[0].to_api() == {"id": "1", "properties": {"email": "a"}}


def test_log_is_newest_first_and_capped(store):
    log = ActionLog(store, limit=3, clock=_clock())
    ids = [log.record("merge_suggestion", str(index)).id for index in range(5)]
    assert [action.id for action in log.list()] == list(reversed(ids))[:3]


def test_persisted_blob_uses_camel_case(store):
    log = ActionLog(store, clock=lambda: 5)
    log.record("merged", "p", undo_payload=PatchUndo(payload=[PatchInput(id="p", fields={})]))
    raw = store.get(ACTIONS_KEY)
    assert '"targetId":"p"' in raw
    assert '"undoPayload":{"action":"patch"' in raw


def test_corrupt_blob_degrades_to_empty(store):
    store.set(ACTIONS_KEY, "{not json")
    log = ActionLog(store)
    assert log.list() == []
    log.record("merged", "p")
    assert len(log.list()) == 1


def test_failure_and_scan_logs(store):
    failures = FailureLog(store, limit=2)
    for index in range(3):
        failures.record("merge_failed", {"mergeId": str(index)})
    assert [entry.details["mergeId"] for entry in failures.list()] == ["2", "1"]
    failures.clear()
    assert failures.list() == []

    scans = ScanHistory(store)
    scans.record("fuzzy", "contacts", {"clusters_found": 2})
    assert scans.list()[0].object_type == "contacts"
    assert scans.list()[0].metrics == {"clusters_found": 2}


def test_file_store_round_trip(tmp_path):
    store = FileStore(tmp_path / "kv")
    assert store.get("dqc.actions") is None
    store.set("dqc.actions", "[]")
    assert (tmp_path / "kv" / "dqc.actions.json").read_text(encoding="utf-8") == "[]"
    assert store.get("dqc.actions") == "[]"
    store.remove("dqc.actions")
    assert store.get("dqc.actions") is None


def test_file_store_io_errors_are_not_raised(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    store = FileStore(blocker)
    store.set("dqc.failures", "[]")
    assert store.get("dqc.failures") is None
    assert FailureLog(store).list() == []


def test_file_store_undecodable_blob_reads_as_empty(tmp_path):
    store = FileStore(tmp_path)
    (tmp_path / "dqc.actions.json").write_bytes(b"\xff\xfe[bad")
    assert store.get("dqc.actions") is None
    assert ActionLog(store).list() == []


def test_memory_store_initial_data():
    store = MemoryStore({"k": "v"})
    assert store.get("k") == "v"
    store.remove("k")
    assert store.get("k") is None


def test_record_accepts_action_type_keyword(store):
    action = ActionLog(store).record(action_type="rejected", target_id="p", payload={"sourceId": "s"})
    assert action.type == ActionType.REJECTED
