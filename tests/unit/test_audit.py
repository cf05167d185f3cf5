"""Unit tests for the audit log."""

from dataclasses import FrozenInstanceError
from datetime import datetime

import pytest

from exprsn_core.audit import AuditEventType, AuditLog


class TestAuditLog:
    """Tests for appending and querying records."""

    def test_record_defaults(self, audit):
        entry = audit.record(AuditEventType.WORKFLOW_CREATE, target_ids=["wf_1", None], name="approvals")

        assert entry.event_type == "workflow_create"
        assert entry.actor == "system"
        assert entry.target_ids == ("wf_1",)
        assert entry.timestamp == datetime(2024, 1, 15, 12, 0)
        assert entry.to_dict()["metadata"] == {"name": "approvals"}

    def test_records_are_immutable(self, audit):
        entry = audit.record(AuditEventType.WORKFLOW_DELETE, actor="u1")

        with pytest.raises(FrozenInstanceError):
            entry.actor = "u2"
        with pytest.raises(TypeError):
            entry.metadata["extra"] = True

    def test_query_filters(self, audit, clock):
        audit.record(AuditEventType.PARAMETER_CREATE, actor="u1", target_ids=["p1"])
        clock.advance(minutes=5)
        audit.record(AuditEventType.PARAMETER_UPDATE, actor="u2", target_ids=["p1"], success=False, error_kind="CycleError")
        audit.record(AuditEventType.PARAMETER_UPDATE, actor="u1", target_ids=["p2"])

        assert len(audit.query(AuditEventType.PARAMETER_UPDATE)) == 2
        assert [r.actor for r in audit.query(target_id="p1")] == ["u1", "u2"]
        assert audit.query(success=False)[0].error_kind == "CycleError"
        assert len(audit.query(since=datetime(2024, 1, 15, 12, 1))) == 2
        assert audit.query(actor="u1", limit=1)[0].target_ids == ("p2",)
        assert audit.count() == len(audit) == 3

    def test_ids_are_sequential(self):
        log = AuditLog()

        first = log.record("custom_event")
        second = log.record("custom_event")

        assert (first.id, second.id) == ("aud_00000001", "aud_00000002")

    def test_sinks(self, audit):
        seen = []

        def broken(entry):
            raise RuntimeError("sink offline")

        audit.add_sink(broken)
        audit.add_sink(seen.append)

        entry = audit.record(AuditEventType.SCHEDULE_FIRE, target_ids=["wf_1"])

        assert seen == [entry]
        assert len(audit) == 1
