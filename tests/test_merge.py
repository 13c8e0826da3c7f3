import asyncio

import httpx
import pytest

from crmdq.fetch.client import create_client_session
from crmdq.quality.dedup import Cluster
from crmdq.quality.merge import MergeOrchestrator
from crmdq.storage.models import ActionType, RecreateUndo, Record

CONTACTS = {
    "p": {"email": "p@x.com", "firstname": "Pat"},
    "a": {"email": "a@x.com", "firstname": "Al"},
    "b": {"email": "b@x.com", "firstname": "Bo"},
    "c": {"email": "c@x.com", "firstname": "Cy"},
}


def _run_merge(crm, settings, actions, failures, primary, merge_ids):
    async def _run():
        async with create_client_session(settings, token="t", transport=crm.transport()) as client:
            orchestrator = MergeOrchestrator(client, actions=actions, failures=failures, object_type="contacts")
            return await orchestrator.execute_merge(primary, merge_ids), client.metrics

    return asyncio.run(_run())


def test_partial_failure_continues_and_records_one_action(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    crm.reject_ids = {"b"}

    result, metrics = _run_merge(crm, settings, actions, failures, "p", ["a", "b", "c"])

    merge_calls = [call[2]["objectIdToMerge"] for call in crm.calls_to("/merge")]
    assert merge_calls == ["a", "b", "c"]
    assert result.merged == ["a", "c"]
    assert result.failed == ["b"]
    assert result.summary() == "2 succeeded, 1 failed"
    assert metrics.get("merges_ok") == 2
    assert metrics.get("merges_failed") == 1

    logged = failures.list()
    assert len(logged) == 1
    assert logged[0].reason == "merge_failed"
    assert logged[0].details["mergeId"] == "b"

    merged = [entry for entry in actions.list() if entry.type == ActionType.MERGED]
    assert len(merged) == 1
    assert merged[0].id == result.action_id
    undo = merged[0].undo_payload
    assert isinstance(undo, RecreateUndo)
    assert [item.id for item in undo.payload.patch] == ["p"]
    assert [item.fields["email"] for item in undo.payload.create] == ["a@x.com", "b@x.com", "c@x.com"]


def test_snapshots_happen_before_merges(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    _run_merge(crm, settings, actions, failures, "p", ["a"])
    kinds = [("merge" if path.endswith("/merge") else "get") for _, path, _ in crm.calls]
    assert kinds == ["get", "get", "merge"]


def test_missing_snapshot_is_logged_not_fatal(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    result, _ = _run_merge(crm, settings, actions, failures, "p", ["a", "ghost"])
    assert result.merged == ["a"]
    assert result.failed == ["ghost"]
    reasons = sorted(entry.reason for entry in failures.list())
    assert reasons == ["merge_failed", "snapshot_failed"]
    undo = actions.list()[0].undo_payload
    assert len(undo.payload.create) == 1


def test_primary_is_not_merged_into_itself(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    result, _ = _run_merge(crm, settings, actions, failures, "p", ["p", "a"])
    assert result.merged == ["a"]
    assert len(crm.calls_to("/merge")) == 1


def test_suggest_merge_records_reviewable_action(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    cluster = Cluster(
        records=[
            Record("a", {"createdate": "2020-01-01T00:00:00Z"}),
            Record("p", {"createdate": "2024-01-01T00:00:00Z"}),
        ],
        top_score=0.91234,
    )

    async def _run():
        async with create_client_session(settings, token="t", transport=crm.transport()) as client:
            orchestrator = MergeOrchestrator(client, actions=actions, failures=failures, object_type="contacts")
            return await orchestrator.suggest_merge(cluster, source="fuzzy")

    action = asyncio.run(_run())
    assert action.type == ActionType.MERGE_SUGGESTION
    assert action.target_id == "p"
    assert action.payload == {
        "objectType": "contacts",
        "primaryId": "p",
        "mergeIds": ["a"],
        "topScore": 0.9123,
        "source": "fuzzy",
    }
    assert crm.calls_to("/merge") == []


def test_unreachable_upstream_still_records_merged_action(make_crm, settings, actions, failures):
    crm = make_crm({"contacts": CONTACTS})
    crm.unreachable_ids = {"b"}

    with pytest.raises(httpx.ConnectTimeout):
        _run_merge(crm, settings, actions, failures, "p", ["a", "b", "c"])

    assert [call[2]["objectIdToMerge"] for call in crm.calls_to("/merge")] == ["a", "b"]
    assert "a" not in crm.objects["contacts"]
    assert "c" in crm.objects["contacts"]

    merged = [entry for entry in actions.list() if entry.type == ActionType.MERGED]
    assert len(merged) == 1
    assert merged[0].payload["merged"] == ["a"]
    assert merged[0].payload["failed"] == ["b", "c"]
    assert [item.fields["email"] for item in merged[0].undo_payload.payload.create] == ["a@x.com", "b@x.com", "c@x.com"]

    logged = failures.list()
    assert [entry.reason for entry in logged] == ["merge_failed"]
    assert logged[0].details["mergeId"] == "b"
    assert logged[0].details["status"] is None
