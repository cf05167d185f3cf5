"""
Workflow and execution storage.

Abstract async stores with in-memory implementations. Stored records are
snapshots: callers never share mutable state with the store.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from exprsn_core.workflow.models import ExecutionStatus, Workflow, WorkflowExecution, WorkflowStatus


class WorkflowRepository(ABC):
    """Abstract base class for workflow definition storage."""

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get a workflow by ID."""
        pass

    @abstractmethod
    async def save(self, workflow: Workflow) -> Workflow:
        """Insert or replace a workflow."""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """Delete a workflow."""
        pass

    @abstractmethod
    async def list(
        self,
        owner_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        """List workflows, optionally filtered."""
        pass

    async def find_by_name(self, name: str, owner_id: Optional[str] = None) -> Optional[Workflow]:
        for workflow in await self.list(owner_id=owner_id):
            if workflow.name == name and workflow.owner_id == owner_id:
                return workflow
        return None


class InMemoryWorkflowRepository(WorkflowRepository):
    """In-memory workflow repository for development and testing."""

    def __init__(self):
        self._workflows: Dict[str, Workflow] = {}

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def save(self, workflow: Workflow) -> Workflow:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        return workflow

    async def delete(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    async def list(
        self,
        owner_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        results = [
            w.model_copy(deep=True)
            for w in self._workflows.values()
            if (owner_id is None or w.owner_id == owner_id)
            and (status is None or w.status == status)
        ]
        results.sort(key=lambda w: (w.created_at, w.id))
        return results


class ExecutionStore(ABC):
    """Abstract base class for execution state storage."""

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get an execution snapshot."""
        pass

    @abstractmethod
    async def save(self, execution: WorkflowExecution) -> None:
        """Persist the full state of an execution."""
        pass

    @abstractmethod
    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        """List execution snapshots, oldest first."""
        pass


class InMemoryExecutionStore(ExecutionStore):
    """In-memory execution store for development and testing."""

    def __init__(self):
        self._executions: Dict[str, WorkflowExecution] = {}
        self.saves = 0

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def save(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = copy.deepcopy(execution)
        self.saves += 1

    async def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> List[WorkflowExecution]:
        results = [
            copy.deepcopy(e)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        results.sort(key=lambda e: (e.created_at, e.id))
        return results
