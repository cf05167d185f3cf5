"""Unit tests for workflow import and export."""

import json

import pytest

from exprsn_core.audit import AuditEventType
from exprsn_core.core.errors import ConflictError, ValidationError
from exprsn_core.transfer import (
    EXPORT_VERSION,
    ConflictResolution,
    ImportExportService,
    ImportOptions,
)
from exprsn_core.workflow import WorkflowService, WorkflowStatus


@pytest.fixture
def transfer(workflows, audit, clock):
    return ImportExportService(workflows, audit=audit, clock=clock)


class TestExport:
    """Tests for export envelopes."""

    @pytest.mark.asyncio
    async def test_export_envelope(self, transfer, workflows, workflow_definition, audit):
        workflow = await workflows.create_workflow(workflow_definition, actor="u1")

        envelope = await transfer.export_workflow(workflow.id, actor="u1")

        assert envelope["exportVersion"] == EXPORT_VERSION
        assert envelope["exportedAt"] == "2024-01-15T12:00:00.000Z"
        assert envelope["workflow"]["name"] == "approvals"
        assert [s["step_id"] for s in envelope["workflow"]["steps"]] == ["total", "label"]
        assert "metadata" not in envelope["workflow"]
        assert "statistics" not in envelope["workflow"]
        assert audit.count(AuditEventType.WORKFLOW_EXPORT) == 1

    @pytest.mark.asyncio
    async def test_optional_blocks(self, transfer, workflows, workflow_definition):
        workflow = await workflows.create_workflow(workflow_definition, actor="u1")

        envelope = await transfer.export_workflow(workflow.id, include_metadata=True, include_statistics=True)

        assert envelope["workflow"]["metadata"]["id"] == workflow.id
        assert envelope["workflow"]["metadata"]["owner_id"] == "u1"
        assert envelope["workflow"]["statistics"]["execution_count"] == 0

    @pytest.mark.asyncio
    async def test_json_text_is_stable(self, transfer, workflows, workflow_definition):
        workflow = await workflows.create_workflow(workflow_definition, actor="u1")

        first = transfer.to_json(await transfer.export_workflow(workflow.id))
        second = transfer.to_json(await transfer.export_workflow(workflow.id))

        assert first == second
        assert list(json.loads(first)) == ["exportVersion", "exportedAt", "workflow"]

    @pytest.mark.asyncio
    async def test_bulk_export(self, transfer, workflows, make_workflow):
        a = await workflows.create_workflow(make_workflow("a"))
        b = await workflows.create_workflow(make_workflow("b"))

        envelope = await transfer.export_workflows([a.id, b.id])

        assert envelope["count"] == 2
        assert [w["name"] for w in envelope["workflows"]] == ["a", "b"]


class TestImport:
    """Tests for importing envelopes and resolving conflicts."""

    @pytest.mark.asyncio
    async def test_round_trip_into_empty_installation(self, transfer, workflows, workflow_definition, audit, clock):
        """Test that an exported workflow imports elsewhere with the same content."""
        original = await workflows.create_workflow(workflow_definition, actor="u1")
        envelope = json.loads(transfer.to_json(await transfer.export_workflow(original.id)))

        target = ImportExportService(WorkflowService(audit=audit, clock=clock), audit=audit, clock=clock)
        result = await target.import_workflow(envelope, actor="u2")

        assert result.success
        assert result.workflow.id != original.id
        assert result.workflow.owner_id == "u2"
        assert result.workflow.status == WorkflowStatus.DRAFT
        assert [s.step_id for s in result.workflow.steps] == ["total", "label"]
        assert result.workflow.variables == {"currency": "EUR"}

    @pytest.mark.asyncio
    async def test_conflict_without_resolution(self, transfer, workflows, workflow_definition, audit):
        original = await workflows.create_workflow(workflow_definition, actor="u1")
        envelope = await transfer.export_workflow(original.id)

        with pytest.raises(ConflictError) as exc_info:
            await transfer.import_workflow(envelope, actor="u1")

        assert exc_info.value.existing_id == original.id
        failures = audit.query(AuditEventType.WORKFLOW_IMPORT, success=False)
        assert failures[0].error_kind == "ConflictError"

    @pytest.mark.asyncio
    async def test_conflict_rename(self, transfer, workflows, workflow_definition):
        original = await workflows.create_workflow(workflow_definition, actor="u1")
        envelope = await transfer.export_workflow(original.id)

        result = await transfer.import_workflow(
            envelope, actor="u1", options=ImportOptions(conflict_resolution="rename")
        )

        assert result.renamed
        assert result.name == "approvals (imported 2024-01-15T12-00-00)"
        assert result.workflow_id != original.id
        assert len(await workflows.list_workflows(owner_id="u1")) == 2

    @pytest.mark.asyncio
    async def test_conflict_replace(self, transfer, workflows, workflow_definition):
        """Test that replace keeps the id and moves the version forward."""
        original = await workflows.create_workflow(workflow_definition, actor="u1")
        envelope = await transfer.export_workflow(original.id)
        envelope["workflow"]["description"] = "Imported description"

        result = await transfer.import_workflow(
            envelope, actor="u1", options=ImportOptions(conflict_resolution=ConflictResolution.REPLACE)
        )

        assert result.replaced
        assert result.workflow_id == original.id
        stored = await workflows.get_workflow(original.id)
        assert stored.version == original.version + 1
        assert stored.description == "Imported description"

    @pytest.mark.asyncio
    async def test_conflict_skip(self, transfer, workflows, workflow_definition):
        original = await workflows.create_workflow(workflow_definition, actor="u1")
        envelope = await transfer.export_workflow(original.id)

        result = await transfer.import_workflow(envelope, actor="u1", options=ImportOptions(conflict_resolution="skip"))

        assert result.to_dict()["success"] is True
        assert result.skipped
        assert result.workflow_id == original.id
        assert len(await workflows.list_workflows()) == 1

    @pytest.mark.asyncio
    async def test_malformed_envelope(self, transfer):
        with pytest.raises(ValidationError) as exc_info:
            await transfer.import_workflow({"workflow": {"definition": {}, "steps": [{"step_type": "script"}]}})

        paths = [error["path"] for error in exc_info.value.errors]
        assert paths == ["workflow.name", "workflow.steps[0].step_id"]

    @pytest.mark.asyncio
    async def test_bulk_import_continues_after_failure(self, transfer, workflows, make_workflow):
        a = await workflows.create_workflow(make_workflow("a"), actor="u1")
        bulk = await transfer.export_workflows([a.id])
        bulk["workflows"].append({"name": "broken", "definition": {}, "steps": [{"step_id": "x"}]})
        bulk["workflows"].append({**bulk["workflows"][0], "name": "fresh"})

        result = await transfer.import_workflows(bulk, actor="u1")

        assert result.total == 3
        assert result.imported == 1
        assert result.failed == 2
        assert [r.name for r in result.results] == ["fresh"]
        assert {e["kind"] for e in result.errors} == {"ConflictError", "ValidationError"}

    @pytest.mark.asyncio
    async def test_bulk_requires_workflow_list(self, transfer):
        with pytest.raises(ValidationError):
            await transfer.import_workflows({"workflow": {}})


class TestValidateImport:
    """Tests for pre-import checks."""

    @pytest.mark.asyncio
    async def test_warnings(self, transfer, workflows, make_workflow):
        existing = await workflows.create_workflow(make_workflow("hooks"), actor="u1")
        envelope = await transfer.export_workflow(existing.id)
        envelope["workflow"]["trigger_type"] = "webhook"

        report = await transfer.validate_import(envelope, actor="u1")

        assert report["valid"] is True
        assert report["workflow"] == {"name": "hooks", "step_count": 2, "trigger_type": "webhook"}
        assert len(report["warnings"]) == 2

    @pytest.mark.asyncio
    async def test_invalid_definition(self, transfer):
        report = await transfer.validate_import(
            {
                "workflow": {
                    "name": "split",
                    "definition": {},
                    "steps": [
                        {"step_id": "a", "step_type": "script"},
                        {"step_id": "b", "step_type": "script"},
                    ],
                }
            }
        )

        assert report["valid"] is False
        assert report["errors"]
