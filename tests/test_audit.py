import json
from datetime import datetime, timezone

from crosstenant_setup.engine.audit import (
    AuditEvent,
    AuditStatus,
    AuditTrail,
    OperationKind,
    load_partition,
    partition_path,
)


def test_partition_name_uses_utc_day(tmp_path):
    day = datetime(2026, 3, 9, 23, 59, tzinfo=timezone.utc)
    assert partition_path(tmp_path, day).name == "crosstenant_audit_20260309.jsonl"


def test_record_appends_json_line(tmp_path):
    trail = AuditTrail("exec-1", tmp_path)
    event = trail.record(OperationKind.SITE_CREATION, "Site created", site_url="https://x/sites/a")

    path = partition_path(tmp_path, event.timestamp)
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    data = json.loads(lines[0])
    assert data["execution_id"] == "exec-1"
    assert data["operation"] == "SiteCreation"
    assert data["status"] == "Completed"
    assert data["attributes"] == {"site_url": "https://x/sites/a"}


def test_in_memory_only_without_directory(tmp_path):
    trail = AuditTrail("exec-1")
    trail.record(OperationKind.FOLDER_CREATION, "Folder created")
    trail.record(OperationKind.GUEST_INVITATION, "Invite failed", AuditStatus.FAILED)

    assert len(trail) == 2
    assert [e.status for e in trail.events] == [AuditStatus.COMPLETED, AuditStatus.FAILED]
    assert len(trail.of_kind(OperationKind.GUEST_INVITATION)) == 1
    assert list(tmp_path.iterdir()) == []


def test_runs_share_a_partition(tmp_path):
    first = AuditTrail("exec-1", tmp_path)
    second = AuditTrail("exec-2", tmp_path)
    first.record(OperationKind.B2B_CONFIGURATION, "one", tenant_id="t1")
    second.record(OperationKind.B2B_CONFIGURATION, "two", tenant_id="t2")
    first.record(OperationKind.SCRIPT_COMPLETION, "done")

    partition = next(tmp_path.glob("crosstenant_audit_*.jsonl"))
    events = load_partition(partition)
    assert [e.execution_id for e in events] == ["exec-1", "exec-2", "exec-1"]
    assert events[1].attributes == {"tenant_id": "t2"}


def test_load_skips_malformed_lines(tmp_path):
    good = AuditEvent("exec-1", OperationKind.SITE_CREATION, "ok").to_dict()
    path = tmp_path / "crosstenant_audit_20260101.jsonl"
    path.write_text(
        json.dumps(good) + "\n"
        + "{not json\n"
        + "\n"
        + json.dumps({"execution_id": "exec-1", "operation": "Bogus", "timestamp": good["timestamp"]}) + "\n",
        encoding="utf-8",
    )

    events = load_partition(path)
    assert len(events) == 1
    assert events[0].operation is OperationKind.SITE_CREATION


def test_event_round_trip_keeps_status_and_time():
    event = AuditEvent("exec-1", OperationKind.GUEST_INVITATION, "d", AuditStatus.WHAT_IF, {"user_email": "a@b.c"})
    restored = AuditEvent.from_dict(json.loads(json.dumps(event.to_dict())))
    assert restored == event
