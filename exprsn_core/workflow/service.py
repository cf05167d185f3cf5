"""
Workflow Service
================

Definition lifecycle for workflows:
- Create / update / delete with static validation
- Status transitions (activate, deactivate, archive)
- Execution statistics bookkeeping
- Audit records and "workflows" topic events for every change

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.errors import ConflictError, NotFound, ValidationError, error_kind
from exprsn_core.core.events import EventRegistry
from exprsn_core.workflow.models import Workflow, WorkflowExecution, WorkflowStatus
from exprsn_core.workflow.repository import InMemoryWorkflowRepository, WorkflowRepository
from exprsn_core.workflow.validator import ValidationResult, WorkflowValidator

logger = structlog.get_logger(__name__)

WORKFLOW_TOPIC = "workflows"

# Fields a caller may never overwrite through update_workflow
_PROTECTED_FIELDS = {
    "id",
    "created_at",
    "execution_count",
    "success_count",
    "failure_count",
    "average_duration_ms",
    "last_executed_at",
}


def build_workflow(definition: Union[Workflow, Mapping[str, Any]]) -> Workflow:
    """Workflow from a model or a mapping; pydantic errors become ValidationError"""
    if isinstance(definition, Workflow):
        return definition.model_copy(deep=True)
    try:
        return Workflow.model_validate(dict(definition))
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid workflow definition",
            errors=[
                {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e


class WorkflowService:
    """
    Workflow definition service.

    Usage:
        service = WorkflowService(audit=audit_log)
        workflow = await service.create_workflow({"name": "approvals", "steps": [...]}, actor="u1")
        await service.activate(workflow.id, actor="u1")
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        validator: Optional[WorkflowValidator] = None,
        audit: Optional[AuditLog] = None,
        events: Optional[EventRegistry] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.repository = repository or InMemoryWorkflowRepository()
        self.validator = validator or WorkflowValidator()
        self._audit = audit or AuditLog()
        self._events = events
        self._clock = clock
        self._logger = structlog.get_logger("workflow_service")

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    async def create_workflow(
        self,
        definition: Union[Workflow, Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> Workflow:
        """Validate and store a new workflow"""
        try:
            workflow = build_workflow(definition)
            if workflow.owner_id is None and actor is not None:
                workflow.owner_id = actor
            await self._check_name(workflow)
            self.validator.validate(workflow).raise_for_errors()
        except (ValidationError, ConflictError) as e:
            self._audit.record(
                AuditEventType.WORKFLOW_CREATE,
                actor=actor,
                success=False,
                error_kind=error_kind(e),
            )
            raise

        now = self._clock()
        workflow.created_at = workflow.updated_at = now
        await self.repository.save(workflow)

        self._audit.record(
            AuditEventType.WORKFLOW_CREATE,
            actor=actor,
            target_ids=[workflow.id],
            name=workflow.name,
            steps=len(workflow.steps),
        )
        self._logger.info("workflow_created", workflow_id=workflow.id, name=workflow.name)
        await self._publish("workflow:created", workflow)
        return workflow

    async def update_workflow(
        self,
        workflow_id: str,
        changes: Mapping[str, Any],
        actor: Optional[str] = None,
        bump_version: Optional[bool] = None,
    ) -> Workflow:
        """
        Apply changes and re-validate.

        The version increments when steps or the definition change, unless
        ``bump_version`` says otherwise.
        """
        existing = await self.get_workflow(workflow_id)
        data = existing.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _PROTECTED_FIELDS})

        if bump_version is None:
            bump_version = "steps" in changes or "definition" in changes
        if bump_version and "version" not in changes:
            data["version"] = existing.version + 1

        try:
            workflow = build_workflow(data)
            if workflow.name != existing.name or workflow.owner_id != existing.owner_id:
                await self._check_name(workflow)
            self.validator.validate(workflow).raise_for_errors()
        except (ValidationError, ConflictError) as e:
            self._audit.record(
                AuditEventType.WORKFLOW_UPDATE,
                actor=actor,
                target_ids=[workflow_id],
                success=False,
                error_kind=error_kind(e),
            )
            raise

        workflow.updated_at = self._clock()
        await self.repository.save(workflow)

        self._audit.record(
            AuditEventType.WORKFLOW_UPDATE,
            actor=actor,
            target_ids=[workflow_id],
            fields=sorted(changes),
            version=workflow.version,
        )
        self._logger.info("workflow_updated", workflow_id=workflow_id, version=workflow.version)
        await self._publish("workflow:updated", workflow)
        return workflow

    async def delete_workflow(self, workflow_id: str, actor: Optional[str] = None) -> None:
        workflow = await self.get_workflow(workflow_id)
        await self.repository.delete(workflow_id)
        self._audit.record(AuditEventType.WORKFLOW_DELETE, actor=actor, target_ids=[workflow_id], name=workflow.name)
        self._logger.info("workflow_deleted", workflow_id=workflow_id)
        await self._publish("workflow:deleted", workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self.repository.get(workflow_id)
        if workflow is None:
            raise NotFound(f"Workflow {workflow_id} not found")
        return workflow

    async def find_by_name(self, name: str, owner_id: Optional[str] = None) -> Optional[Workflow]:
        return await self.repository.find_by_name(name, owner_id)

    async def list_workflows(
        self,
        owner_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        tag: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Workflow]:
        workflows = await self.repository.list(owner_id=owner_id, status=status)
        return [
            w for w in workflows
            if (tag is None or tag in w.tags) and (category is None or w.category == category)
        ]

    def validate(self, workflow: Union[Workflow, Mapping[str, Any]]) -> ValidationResult:
        return self.validator.validate(build_workflow(workflow))

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def activate(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        if not workflow.steps:
            raise ValidationError(f"Workflow '{workflow.name}' has no steps to activate")
        return await self.set_status(workflow_id, WorkflowStatus.ACTIVE, actor)

    async def deactivate(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        return await self.set_status(workflow_id, WorkflowStatus.INACTIVE, actor)

    async def archive(self, workflow_id: str, actor: Optional[str] = None) -> Workflow:
        return await self.set_status(workflow_id, WorkflowStatus.ARCHIVED, actor)

    async def set_status(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        actor: Optional[str] = None,
    ) -> Workflow:
        workflow = await self.get_workflow(workflow_id)
        previous = workflow.status
        workflow.status = status
        workflow.updated_at = self._clock()
        await self.repository.save(workflow)

        self._audit.record(
            AuditEventType.WORKFLOW_STATUS,
            actor=actor,
            target_ids=[workflow_id],
            previous=previous.value,
            status=status.value,
        )
        self._logger.info(
            "workflow_status_changed",
            workflow_id=workflow_id,
            previous=previous.value,
            status=status.value,
        )
        await self._publish("workflow:status", workflow)
        return workflow

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    async def record_execution(self, execution: WorkflowExecution) -> None:
        """Fold a terminal execution into its workflow's statistics"""
        workflow = await self.repository.get(execution.workflow_id)
        if workflow is None:
            self._logger.warning("statistics_workflow_missing", workflow_id=execution.workflow_id)
            return

        succeeded = {"succeeded": True, "failed": False}.get(execution.status.value)
        workflow.record_execution(
            succeeded,
            execution.duration_ms or 0.0,
            execution.finished_at or self._clock(),
        )
        await self.repository.save(workflow)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _check_name(self, workflow: Workflow) -> None:
        existing = await self.repository.find_by_name(workflow.name, workflow.owner_id)
        if existing is not None and existing.id != workflow.id:
            raise ConflictError(
                f"A workflow named '{workflow.name}' already exists",
                existing_id=existing.id,
            )

    async def _publish(self, event_type: str, workflow: Workflow) -> None:
        if self._events is None:
            return
        await self._events.publish(
            WORKFLOW_TOPIC,
            event_type,
            {
                "workflow_id": workflow.id,
                "status": workflow.status.value,
                "trigger_type": workflow.trigger_type.value,
            },
        )
