"""
Workflow Engine
===============

Workflow definitions, static validation, storage and the executor.

Author: Builder Engine Team
Version: 2.0.0
"""

from exprsn_core.workflow.bodies import (
    DecisionStepBody,
    GatewayStepBody,
    HttpStepBody,
    LoopStepBody,
    OutcomeStatus,
    ScriptStepBody,
    ServiceStepBody,
    StepBody,
    StepInvocation,
    StepOutcome,
    UserTaskStepBody,
    WaitStepBody,
    default_bodies,
)
from exprsn_core.workflow.executor import WorkflowExecutor, idempotency_key
from exprsn_core.workflow.models import (
    AttemptStatus,
    BranchState,
    BranchStatus,
    ExecutionStatus,
    RetryConfig,
    RetryStrategy,
    Step,
    StepAttempt,
    StepCondition,
    StepType,
    TriggerType,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
)
from exprsn_core.workflow.repository import (
    ExecutionStore,
    InMemoryExecutionStore,
    InMemoryWorkflowRepository,
    WorkflowRepository,
)
from exprsn_core.workflow.service import WorkflowService, build_workflow
from exprsn_core.workflow.validator import ValidationIssue, ValidationResult, WorkflowValidator

__all__ = [
    # Models
    "AttemptStatus",
    "BranchState",
    "BranchStatus",
    "ExecutionStatus",
    "RetryConfig",
    "RetryStrategy",
    "Step",
    "StepAttempt",
    "StepCondition",
    "StepType",
    "TriggerType",
    "Workflow",
    "WorkflowExecution",
    "WorkflowStatus",
    # Storage
    "ExecutionStore",
    "InMemoryExecutionStore",
    "InMemoryWorkflowRepository",
    "WorkflowRepository",
    # Service
    "WorkflowService",
    "build_workflow",
    "ValidationIssue",
    "ValidationResult",
    "WorkflowValidator",
    # Execution
    "WorkflowExecutor",
    "idempotency_key",
    "DecisionStepBody",
    "GatewayStepBody",
    "HttpStepBody",
    "LoopStepBody",
    "OutcomeStatus",
    "ScriptStepBody",
    "ServiceStepBody",
    "StepBody",
    "StepInvocation",
    "StepOutcome",
    "UserTaskStepBody",
    "WaitStepBody",
    "default_bodies",
]
