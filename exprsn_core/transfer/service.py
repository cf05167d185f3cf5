"""
Workflow Import / Export
========================

Canonical JSON envelopes for moving workflows between installations.

Features:
- Single and bulk export with a stable key order
- Optional ownership metadata and runtime statistics blocks
- Import with conflict resolution (rename, replace, skip)
- Pre-import validation with warnings
- Audit records for every import and export

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.errors import ConflictError, ExprsnError, ValidationError, error_kind
from exprsn_core.workflow.models import Step, TriggerType, Workflow, WorkflowStatus
from exprsn_core.workflow.service import WorkflowService, build_workflow

logger = structlog.get_logger(__name__)

EXPORT_VERSION = "1.0.0"

# Emission order of the envelope; anything else is neither written nor read
WORKFLOW_FIELDS = (
    "name",
    "description",
    "version",
    "trigger_type",
    "trigger_config",
    "definition",
    "variables",
    "exprlang_schema",
    "tags",
    "category",
    "is_template",
    "template_category",
    "settings",
)

STEP_FIELDS = (
    "step_id",
    "step_type",
    "name",
    "description",
    "position",
    "config",
    "inputs",
    "outputs",
    "conditions",
    "next_steps",
    "error_handler",
    "timeout_ms",
    "retry_config",
    "flags",
    "order",
    "is_enabled",
)

STATISTICS_FIELDS = (
    "execution_count",
    "success_count",
    "failure_count",
    "average_duration_ms",
    "last_executed_at",
)

MAX_RECOMMENDED_STEPS = 100


class ConflictResolution(str, Enum):
    """What to do when an imported workflow already exists"""

    RENAME = "rename"
    REPLACE = "replace"
    SKIP = "skip"


class ImportOptions(BaseModel):
    """Import behaviour"""

    conflict_resolution: Optional[ConflictResolution] = None
    preserve_ids: bool = False
    status: WorkflowStatus = WorkflowStatus.DRAFT


@dataclass
class ImportResult:
    """Outcome of importing one workflow"""

    success: bool
    workflow_id: Optional[str] = None
    name: Optional[str] = None
    skipped: bool = False
    replaced: bool = False
    renamed: bool = False
    message: str = ""
    workflow: Optional[Workflow] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "skipped": self.skipped,
            "replaced": self.replaced,
            "renamed": self.renamed,
            "message": self.message,
        }


@dataclass
class BulkImportResult:
    """Outcome of importing a bulk envelope"""

    total: int
    results: List[ImportResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "total": self.total,
            "imported": self.imported,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
            "errors": self.errors,
        }


# =============================================================================
# SERIALIZATION
# =============================================================================


def serialize_step(step: Step) -> Dict[str, Any]:
    data = step.model_dump(mode="json")
    return {name: data[name] for name in STEP_FIELDS}


def serialize_workflow(
    workflow: Workflow,
    include_metadata: bool = False,
    include_statistics: bool = False,
) -> Dict[str, Any]:
    """Canonical export form of one workflow"""
    data = workflow.model_dump(mode="json")
    serialized = {name: data[name] for name in WORKFLOW_FIELDS}
    serialized["steps"] = [
        serialize_step(step)
        for _, step in sorted(enumerate(workflow.steps), key=lambda pair: (pair[1].order, pair[0]))
    ]

    if include_metadata:
        serialized["metadata"] = {
            "id": data["id"],
            "owner_id": data["owner_id"],
            "created_at": data["created_at"],
            "updated_at": data["updated_at"],
        }
    if include_statistics:
        serialized["statistics"] = {name: data[name] for name in STATISTICS_FIELDS}
    return serialized


def to_json(envelope: Mapping[str, Any]) -> str:
    """Stable text form of an envelope"""
    return json.dumps(envelope, indent=2, ensure_ascii=False)


def _pick_workflow(data: Mapping[str, Any]) -> Dict[str, Any]:
    picked = {name: data[name] for name in WORKFLOW_FIELDS if data.get(name) is not None}
    picked["steps"] = [
        {name: step[name] for name in STEP_FIELDS if name in step}
        for step in data.get("steps") or []
    ]
    return picked


# =============================================================================
# SERVICE
# =============================================================================


class ImportExportService:
    """
    Workflow import/export.

    Usage:
        transfer = ImportExportService(workflow_service, audit=audit_log)

        envelope = await transfer.export_workflow(workflow.id)
        text = transfer.to_json(envelope)

        result = await transfer.import_workflow(
            json.loads(text),
            actor="u1",
            options=ImportOptions(conflict_resolution="rename"),
        )
    """

    def __init__(
        self,
        workflows: WorkflowService,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._workflows = workflows
        self._audit = audit or AuditLog()
        self._clock = clock
        self._logger = structlog.get_logger("import_export")

    def to_json(self, envelope: Mapping[str, Any]) -> str:
        return to_json(envelope)

    def _exported_at(self) -> str:
        return self._clock().isoformat(timespec="milliseconds") + "Z"

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    async def export_workflow(
        self,
        workflow_id: str,
        include_metadata: bool = False,
        include_statistics: bool = False,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Envelope ``{exportVersion, exportedAt, workflow}``"""
        workflow = await self._workflows.get_workflow(workflow_id)
        envelope = {
            "exportVersion": EXPORT_VERSION,
            "exportedAt": self._exported_at(),
            "workflow": serialize_workflow(workflow, include_metadata, include_statistics),
        }

        self._audit.record(
            AuditEventType.WORKFLOW_EXPORT,
            actor=actor,
            target_ids=[workflow_id],
            name=workflow.name,
        )
        self._logger.info("workflow_exported", workflow_id=workflow_id, name=workflow.name)
        return envelope

    async def export_workflows(
        self,
        workflow_ids: Sequence[str],
        include_metadata: bool = False,
        include_statistics: bool = False,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Bulk envelope ``{exportVersion, exportedAt, count, workflows}``"""
        workflows = [await self._workflows.get_workflow(wid) for wid in workflow_ids]
        envelope = {
            "exportVersion": EXPORT_VERSION,
            "exportedAt": self._exported_at(),
            "count": len(workflows),
            "workflows": [serialize_workflow(w, include_metadata, include_statistics) for w in workflows],
        }

        self._audit.record(
            AuditEventType.WORKFLOW_EXPORT,
            actor=actor,
            target_ids=[w.id for w in workflows],
            count=len(workflows),
        )
        self._logger.info("workflows_exported", count=len(workflows))
        return envelope

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    async def import_workflow(
        self,
        doc: Mapping[str, Any],
        actor: Optional[str] = None,
        options: Optional[ImportOptions] = None,
    ) -> ImportResult:
        """
        Import one workflow envelope.

        Raises:
            ValidationError: the envelope or the workflow it describes is invalid
            ConflictError: the workflow exists and no resolution was chosen
        """
        options = options or ImportOptions()
        try:
            result = await self._import(doc, actor, options)
        except ExprsnError as e:
            self._audit.record(
                AuditEventType.WORKFLOW_IMPORT,
                actor=actor,
                success=False,
                error_kind=error_kind(e),
                name=_envelope_name(doc),
            )
            self._logger.warning("workflow_import_failed", name=_envelope_name(doc), error=str(e))
            raise

        self._audit.record(
            AuditEventType.WORKFLOW_IMPORT,
            actor=actor,
            target_ids=[result.workflow_id] if result.workflow_id else [],
            original_name=_envelope_name(doc),
            imported_name=result.name,
            skipped=result.skipped,
            replaced=result.replaced,
            renamed=result.renamed,
            steps=len(doc["workflow"].get("steps") or []),
        )
        self._logger.info(
            "workflow_imported",
            workflow_id=result.workflow_id,
            name=result.name,
            skipped=result.skipped,
            replaced=result.replaced,
        )
        return result

    async def _import(self, doc: Mapping[str, Any], actor: Optional[str], options: ImportOptions) -> ImportResult:
        validate_envelope(doc)
        data = doc["workflow"]
        picked = _pick_workflow(data)
        metadata = data.get("metadata") or {}

        existing = await self._find_conflict(picked["name"], metadata.get("id"), actor, options)
        renamed = False
        if existing is not None:
            if options.conflict_resolution is None:
                raise ConflictError(
                    f"A workflow named '{existing.name}' already exists",
                    existing_id=existing.id,
                )
            if options.conflict_resolution == ConflictResolution.SKIP:
                return ImportResult(
                    success=True,
                    workflow_id=existing.id,
                    name=existing.name,
                    skipped=True,
                    message="Workflow already exists",
                )
            if options.conflict_resolution == ConflictResolution.REPLACE:
                return await self._replace(existing, picked, actor)

            picked["name"] = self.unique_name(picked["name"])
            renamed = True

        picked["status"] = options.status
        picked["owner_id"] = actor
        if options.preserve_ids and metadata.get("id"):
            picked["id"] = metadata["id"]

        workflow = await self._workflows.create_workflow(picked, actor=actor)
        return ImportResult(
            success=True,
            workflow_id=workflow.id,
            name=workflow.name,
            renamed=renamed,
            message="Workflow imported successfully",
            workflow=workflow,
        )

    async def _replace(self, existing: Workflow, picked: Dict[str, Any], actor: Optional[str]) -> ImportResult:
        fresh = build_workflow(picked)
        changes = fresh.model_dump(include=set(WORKFLOW_FIELDS) | {"steps"}, exclude={"name"})
        changes["version"] = existing.version + 1
        workflow = await self._workflows.update_workflow(existing.id, changes, actor=actor, bump_version=False)
        return ImportResult(
            success=True,
            workflow_id=workflow.id,
            name=workflow.name,
            replaced=True,
            message="Workflow replaced successfully",
            workflow=workflow,
        )

    async def _find_conflict(
        self,
        name: str,
        workflow_id: Optional[str],
        actor: Optional[str],
        options: ImportOptions,
    ) -> Optional[Workflow]:
        if workflow_id and options.preserve_ids:
            existing = await self._workflows.repository.get(workflow_id)
            if existing is not None:
                return existing
        return await self._workflows.find_by_name(name, actor)

    def unique_name(self, name: str) -> str:
        """``"<name> (imported <timestamp>)"``"""
        stamp = self._clock().isoformat().replace(":", "-").replace(".", "-")[:19]
        return f"{name} (imported {stamp})"

    async def import_workflows(
        self,
        doc: Mapping[str, Any],
        actor: Optional[str] = None,
        options: Optional[ImportOptions] = None,
    ) -> BulkImportResult:
        """Import a bulk envelope; one failure never stops the rest"""
        entries = doc.get("workflows") if isinstance(doc, Mapping) else None
        if not isinstance(entries, list):
            raise ValidationError("Invalid import data: workflows array required")

        bulk = BulkImportResult(total=len(entries))
        for entry in entries:
            try:
                bulk.results.append(await self.import_workflow({"workflow": entry}, actor, options))
            except ExprsnError as e:
                bulk.errors.append(
                    {
                        "name": entry.get("name") if isinstance(entry, Mapping) else None,
                        "kind": e.kind,
                        "error": e.message,
                    }
                )

        self._logger.info(
            "bulk_import_completed",
            total=bulk.total,
            imported=bulk.imported,
            failed=bulk.failed,
        )
        return bulk

    # -------------------------------------------------------------------------
    # Pre-check
    # -------------------------------------------------------------------------

    async def validate_import(self, doc: Mapping[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
        """Validate an envelope without importing it; returns warnings for risky content"""
        try:
            validate_envelope(doc)
            picked = _pick_workflow(doc["workflow"])
            self._workflows.validate(picked).raise_for_errors()
        except ValidationError as e:
            return {"valid": False, "error": e.message, "errors": e.errors}

        data = doc["workflow"]
        trigger_type = data.get("trigger_type", TriggerType.MANUAL.value)
        trigger_config = data.get("trigger_config") or {}
        steps = data.get("steps") or []
        warnings = []

        if trigger_type == TriggerType.WEBHOOK.value and not trigger_config.get("secret"):
            warnings.append("Webhook trigger configured but no secret will be imported")
        if trigger_type == TriggerType.SCHEDULED.value and not trigger_config.get("schedule"):
            warnings.append("Scheduled trigger configured but no schedule found")
        if len(steps) > MAX_RECOMMENDED_STEPS:
            warnings.append(f"Workflow has {len(steps)} steps (may impact performance)")
        if await self._workflows.find_by_name(data["name"], actor) is not None:
            warnings.append(f'Workflow with name "{data["name"]}" already exists')

        return {
            "valid": True,
            "warnings": warnings,
            "workflow": {
                "name": data["name"],
                "step_count": len(steps),
                "trigger_type": trigger_type,
            },
        }


# =============================================================================
# HELPERS
# =============================================================================


def validate_envelope(doc: Any) -> None:
    """Structural checks of a single-workflow envelope"""
    if not isinstance(doc, Mapping):
        raise ValidationError("Invalid import data: must be an object")
    workflow = doc.get("workflow")
    if not isinstance(workflow, Mapping):
        raise ValidationError("Invalid import data: workflow required")

    errors = []
    if not workflow.get("name"):
        errors.append({"path": "workflow.name", "message": "name required"})
    if workflow.get("definition") is None:
        errors.append({"path": "workflow.definition", "message": "definition required"})

    steps = workflow.get("steps") or []
    if not isinstance(steps, list):
        errors.append({"path": "workflow.steps", "message": "steps must be a list"})
        steps = []
    for i, step in enumerate(steps):
        if not isinstance(step, Mapping):
            errors.append({"path": f"workflow.steps[{i}]", "message": "step must be an object"})
            continue
        if not step.get("step_id"):
            errors.append({"path": f"workflow.steps[{i}].step_id", "message": "step_id required"})
        if not step.get("step_type"):
            errors.append({"path": f"workflow.steps[{i}].step_type", "message": "step_type required"})

    if errors:
        raise ValidationError(f"Invalid workflow data: {errors[0]['message']}", errors=errors)


def _envelope_name(doc: Any) -> Optional[str]:
    if isinstance(doc, Mapping) and isinstance(doc.get("workflow"), Mapping):
        return doc["workflow"].get("name")
    return None
