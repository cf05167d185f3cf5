"""
Workflow Models
===============

Definition records for workflows and their steps, plus the runtime
records of executions:
- Workflow / Step definitions (pydantic, validated on construction)
- Retry configuration with fixed and exponential backoff
- WorkflowExecution with per-branch state and ordered StepAttempt records

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from exprsn_core.exprlang import parse_formula


# =============================================================================
# ENUMS
# =============================================================================


class WorkflowStatus(str, Enum):
    """Workflow definition lifecycle"""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    """How executions of a workflow are started"""

    MANUAL = "manual"
    WEBHOOK = "webhook"
    SCHEDULED = "scheduled"
    EVENT = "event"


class StepType(str, Enum):
    """Built-in step types"""

    SERVICE = "service"
    USER = "user"
    SCRIPT = "script"
    GATEWAY = "gateway"
    WAIT = "wait"
    HTTP = "http"
    DECISION = "decision"
    LOOP = "loop"


# Step types that may sit on a cycle
LOOPING_STEP_TYPES = {StepType.WAIT.value, StepType.LOOP.value}


class RetryStrategy(str, Enum):
    """Backoff strategies"""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ExecutionStatus(str, Enum):
    """Execution states"""

    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class AttemptStatus(str, Enum):
    """Step attempt states"""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class BranchStatus(str, Enum):
    """Branch states within one execution"""

    RUNNING = "running"
    SUSPENDED = "suspended"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# DEFINITION MODELS
# =============================================================================


class RetryConfig(BaseModel):
    """Retry configuration for a step"""

    max_attempts: int = Field(default=1, ge=1)
    backoff_ms: int = Field(default=0, ge=0)
    strategy: RetryStrategy = RetryStrategy.FIXED
    multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_ms: Optional[int] = Field(default=None, ge=0)

    def get_delay_ms(self, attempt: int, cap_ms: Optional[int] = None) -> float:
        """Delay before the retry following failed attempt number ``attempt`` (1-based)"""
        if self.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.backoff_ms * (self.multiplier ** (attempt - 1))
        else:
            delay = float(self.backoff_ms)

        cap = self.max_backoff_ms if self.max_backoff_ms is not None else cap_ms
        if cap is not None:
            delay = min(delay, cap)
        return delay


class StepCondition(BaseModel):
    """Gateway route: take ``next`` when ``when`` is truthy"""

    when: Any
    next: str

    def expression(self) -> Any:
        """Expression document for ``when``; bare strings are infix formulas"""
        if isinstance(self.when, str) and not self.when.startswith("$"):
            return parse_formula(self.when)
        return self.when


def _decode_condition_key(key: str) -> Any:
    try:
        return json.loads(key)
    except ValueError:
        return key


class Step(BaseModel):
    """A node of the workflow graph"""

    step_id: str = Field(..., min_length=1)
    step_type: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    position: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Optional[str]] = Field(default_factory=dict)
    conditions: List[StepCondition] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    error_handler: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    flags: Dict[str, Any] = Field(default_factory=dict)
    order: int = 0
    is_enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _normalize_routes(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        next_steps = data.get("next_steps")
        if isinstance(next_steps, str):
            data["next_steps"] = [next_steps]
        elif next_steps is None:
            data["next_steps"] = []

        conditions = data.get("conditions")
        if isinstance(conditions, dict):
            routes = []
            defaults = list(data["next_steps"])
            for key, target in conditions.items():
                if key == "default":
                    if target not in defaults:
                        defaults.append(target)
                    continue
                routes.append({"when": _decode_condition_key(key), "next": target})
            data["conditions"] = routes
            data["next_steps"] = defaults
        elif conditions is None:
            data["conditions"] = []

        if isinstance(data.get("error_handler"), dict):
            data["error_handler"] = data["error_handler"].get("nextStep") or data["error_handler"].get("step_id")
        return data

    @property
    def is_gateway(self) -> bool:
        return self.step_type == StepType.GATEWAY.value or bool(self.conditions)

    @property
    def deterministic(self) -> bool:
        return bool(self.flags.get("deterministic", True))

    def targets(self) -> List[str]:
        """Every step id this step can transition to"""
        found = [c.next for c in self.conditions] + list(self.next_steps)
        if self.error_handler:
            found.append(self.error_handler)
        return found


class Workflow(BaseModel):
    """A workflow definition and its lifecycle statistics"""

    id: str = Field(default_factory=lambda: f"wf_{uuid4().hex[:12]}")
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    version: int = Field(default=1, ge=1)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    definition: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    exprlang_schema: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    is_template: bool = False
    template_category: Optional[str] = None
    owner_id: Optional[str] = None
    steps: List[Step] = Field(default_factory=list)

    # Statistics
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_duration_ms: float = 0.0
    last_executed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, value: List[str]) -> List[str]:
        return sorted(set(value))

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def step_map(self) -> Dict[str, Step]:
        return {step.step_id: step for step in self.steps}

    def record_execution(self, succeeded: Optional[bool], duration_ms: float, finished_at: datetime) -> None:
        """Fold one terminal execution into the statistics"""
        self.execution_count += 1
        if succeeded is True:
            self.success_count += 1
        elif succeeded is False:
            self.failure_count += 1
        previous = self.execution_count - 1
        self.average_duration_ms = (self.average_duration_ms * previous + duration_ms) / self.execution_count
        self.last_executed_at = finished_at


# =============================================================================
# RUNTIME RECORDS
# =============================================================================


@dataclass
class StepAttempt:
    """One attempt at running one step"""

    step_id: str
    attempt_index: int
    branch_id: str
    idempotency_key: str
    status: AttemptStatus = AttemptStatus.RUNNING
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    resume_handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "attempt_index": self.attempt_index,
            "branch_id": self.branch_id,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "inputs": self.inputs,
            "outputs": self.outputs,
            "error": self.error,
        }


@dataclass
class BranchState:
    """Cursor of one independent path through the graph"""

    branch_id: str
    current_step_id: Optional[str]
    status: BranchStatus = BranchStatus.RUNNING
    attempt_index: int = 0
    error: Optional[Dict[str, Any]] = None
    resume_handle: Optional[str] = None
    wake_at: Optional[datetime] = None
    resume_payload: Optional[Dict[str, Any]] = None


@dataclass
class WorkflowExecution:
    """A single run of a workflow"""

    id: str
    workflow_id: str
    version_used: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger: str = TriggerType.MANUAL.value
    input_data: Dict[str, Any] = field(default_factory=dict)
    variables_snapshot: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    step_outputs: Dict[str, Any] = field(default_factory=dict)
    branches: Dict[str, BranchState] = field(default_factory=dict)
    attempts: List[StepAttempt] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    steps_executed: int = 0
    initiated_by: Optional[str] = None
    workflow_snapshot: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def current_step_id(self) -> Optional[str]:
        """Step of the earliest branch still in flight"""
        for branch in self.branches.values():
            if branch.status in (BranchStatus.RUNNING, BranchStatus.SUSPENDED):
                return branch.current_step_id
        return None

    @property
    def retry_index(self) -> int:
        return max((b.attempt_index for b in self.branches.values()), default=0)

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds() * 1000
        return None

    def attempts_for(self, step_id: str) -> List[StepAttempt]:
        return [a for a in self.attempts if a.step_id == step_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "version_used": self.version_used,
            "status": self.status.value,
            "trigger": self.trigger,
            "variables_snapshot": self.variables_snapshot,
            "variables": self.variables,
            "step_outputs": self.step_outputs,
            "current_step_id": self.current_step_id,
            "retry_index": self.retry_index,
            "error": self.error,
            "attempts": [a.to_dict() for a in self.attempts],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
