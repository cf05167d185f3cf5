"""
Step Body Capabilities
======================

The executor dispatches each step to the capability registered for its
step_type. A capability receives the step config, the resolved inputs, a
deterministic idempotency key and a deadline, and answers with an outcome:
succeeded, failed or suspended (with a resume handle).

Built-in capabilities:
- script: evaluates ExprLang into outputs
- gateway: pass-through used for routing
- wait: suspends until a deadline
- user: suspends until an external completion signal
- decision: evaluates a decision table
- loop: iteration counter for looping routes
- service: dispatches to registered async handlers
- http: outbound HTTP call carrying an Idempotency-Key header

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import structlog

from exprsn_core.decisions import DecisionEngine
from exprsn_core.exprlang import ExprEngine
from exprsn_core.workflow.models import Step, StepType

logger = structlog.get_logger(__name__)


# =============================================================================
# CONTRACT
# =============================================================================


class OutcomeStatus(str, Enum):
    """Step body outcome"""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUSPENDED = "suspended"


@dataclass
class StepInvocation:
    """Everything a capability needs to run one attempt"""

    execution_id: str
    workflow_id: str
    step: Step
    inputs: Dict[str, Any]
    idempotency_key: str
    attempt_index: int
    deadline: Optional[datetime] = None
    context: Mapping[str, Any] = field(default_factory=dict)
    resource: Any = None

    @property
    def config(self) -> Dict[str, Any]:
        return self.step.config


@dataclass
class StepOutcome:
    """Result of one attempt"""

    status: OutcomeStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    resume_handle: Optional[str] = None
    wake_at: Optional[datetime] = None

    @classmethod
    def succeeded(cls, outputs: Optional[Dict[str, Any]] = None) -> "StepOutcome":
        return cls(status=OutcomeStatus.SUCCEEDED, outputs=outputs or {})

    @classmethod
    def failed(cls, error: str, outputs: Optional[Dict[str, Any]] = None) -> "StepOutcome":
        return cls(status=OutcomeStatus.FAILED, error=error, outputs=outputs or {})

    @classmethod
    def suspended(
        cls,
        resume_handle: str,
        wake_at: Optional[datetime] = None,
        outputs: Optional[Dict[str, Any]] = None,
    ) -> "StepOutcome":
        return cls(
            status=OutcomeStatus.SUSPENDED,
            resume_handle=resume_handle,
            wake_at=wake_at,
            outputs=outputs or {},
        )


class StepBody(ABC):
    """Abstract base class for step capabilities."""

    step_type: str = ""
    deterministic: bool = True

    @asynccontextmanager
    async def acquire(self, invocation: StepInvocation) -> AsyncIterator[Any]:
        """Scoped resources for one attempt; released on every exit path"""
        yield None

    @abstractmethod
    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        """Run one attempt."""
        pass


# =============================================================================
# BUILT-IN BODIES
# =============================================================================


class ScriptStepBody(StepBody):
    """
    Evaluates ExprLang.

    Config:
        outputs: mapping of output name -> expression
        expression: single expression stored as ``result``

    Without either, the resolved inputs become the outputs.
    """

    step_type = StepType.SCRIPT.value

    def __init__(self, engine: Optional[ExprEngine] = None):
        self._engine = engine or ExprEngine()

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        scope = {**invocation.context, **invocation.inputs, "inputs": invocation.inputs}
        config = invocation.config

        if "outputs" in config:
            return StepOutcome.succeeded(
                {name: self._engine.evaluate(expr, scope) for name, expr in config["outputs"].items()}
            )
        if "expression" in config:
            return StepOutcome.succeeded({"result": self._engine.evaluate(config["expression"], scope)})
        return StepOutcome.succeeded(dict(invocation.inputs))


class GatewayStepBody(StepBody):
    """Routing only; the executor evaluates the gateway's conditions"""

    step_type = StepType.GATEWAY.value

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        return StepOutcome.succeeded(dict(invocation.inputs))


class WaitStepBody(StepBody):
    """
    Suspends until a deadline.

    Config or inputs:
        duration_ms: relative wait
        until: absolute ISO-8601 deadline
    """

    step_type = StepType.WAIT.value

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        params = {**invocation.config, **invocation.inputs}
        now = self._clock()

        if params.get("until"):
            until = params["until"]
            wake_at = until if isinstance(until, datetime) else datetime.fromisoformat(str(until).replace("Z", ""))
        else:
            wake_at = now + timedelta(milliseconds=float(params.get("duration_ms", 0)))

        if wake_at <= now:
            return StepOutcome.succeeded({"waited_until": wake_at.isoformat()})
        return StepOutcome.suspended(
            resume_handle=f"wait:{invocation.idempotency_key}",
            wake_at=wake_at,
            outputs={"waited_until": wake_at.isoformat()},
        )


class UserTaskStepBody(StepBody):
    """Suspends until complete_user_task / reject_user_task is called"""

    step_type = StepType.USER.value
    deterministic = False

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        return StepOutcome.suspended(
            resume_handle=f"user:{invocation.idempotency_key}",
            outputs={
                "assignee": invocation.config.get("assignee"),
                "task": dict(invocation.inputs),
            },
        )


class DecisionStepBody(StepBody):
    """
    Evaluates a decision table with the resolved inputs.

    Config:
        table_id: registered decision table
    """

    step_type = StepType.DECISION.value

    def __init__(self, decisions: DecisionEngine):
        self._decisions = decisions

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        table_id = invocation.config.get("table_id")
        if not table_id:
            return StepOutcome.failed("decision step requires config.table_id")
        result = self._decisions.evaluate(table_id, invocation.inputs)
        return StepOutcome.succeeded(
            {
                "matched": result.matched,
                "result": result.outputs,
                "matched_rule_ids": result.matched_rule_ids,
            }
        )


class LoopStepBody(StepBody):
    """
    Iteration counter for loops routed through gateway conditions.

    Config or inputs:
        items: optional list; ``item`` is the current element
        max_iterations: optional bound; ``done`` turns true when reached
    """

    step_type = StepType.LOOP.value

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        params = {**invocation.config, **invocation.inputs}
        previous = invocation.context.get("steps", {}).get(invocation.step.step_id) or {}
        iteration = int(previous.get("iteration", 0)) + 1

        items = params.get("items")
        limit = params.get("max_iterations")
        if isinstance(items, list):
            limit = len(items) if limit is None else min(int(limit), len(items))

        outputs: Dict[str, Any] = {
            "iteration": iteration,
            "index": iteration - 1,
            "done": limit is not None and iteration >= int(limit),
        }
        if isinstance(items, list) and iteration <= len(items):
            outputs["item"] = items[iteration - 1]
        return StepOutcome.succeeded(outputs)


ServiceHandler = Callable[[Dict[str, Any], StepInvocation], Awaitable[Dict[str, Any]]]


class ServiceStepBody(StepBody):
    """
    Dispatches to a registered service handler.

    Config:
        service: handler name
    """

    step_type = StepType.SERVICE.value

    def __init__(self, handlers: Optional[Dict[str, ServiceHandler]] = None):
        self._handlers: Dict[str, ServiceHandler] = dict(handlers or {})

    def register(self, name: str, handler: ServiceHandler) -> None:
        self._handlers[name] = handler

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        name = invocation.config.get("service")
        handler = self._handlers.get(name)
        if handler is None:
            return StepOutcome.failed(f"no service handler registered as '{name}'")
        outputs = await handler(dict(invocation.inputs), invocation)
        return StepOutcome.succeeded(outputs or {})


class HttpStepBody(StepBody):
    """
    Outbound HTTP call.

    Config or inputs:
        method: HTTP method (default GET)
        url: target URL
        headers: extra headers
        json / params: request body and query
    """

    step_type = StepType.HTTP.value

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        default_timeout_s: float = 30.0,
    ):
        self._transport = transport
        self._default_timeout_s = default_timeout_s

    @asynccontextmanager
    async def acquire(self, invocation: StepInvocation) -> AsyncIterator[httpx.AsyncClient]:
        timeout = self._default_timeout_s
        if invocation.step.timeout_ms:
            timeout = invocation.step.timeout_ms / 1000
        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            yield client

    async def invoke(self, invocation: StepInvocation) -> StepOutcome:
        params = {**invocation.config, **invocation.inputs}
        url = params.get("url")
        if not url:
            return StepOutcome.failed("http step requires a url")

        headers = {**params.get("headers", {}), "Idempotency-Key": invocation.idempotency_key}
        client: httpx.AsyncClient = invocation.resource
        response = await client.request(
            params.get("method", "GET").upper(),
            url,
            headers=headers,
            json=params.get("json"),
            params=params.get("params"),
        )

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        outputs = {"status_code": response.status_code, "body": body}
        if response.is_error:
            return StepOutcome.failed(f"HTTP {response.status_code} from {url}", outputs=outputs)
        return StepOutcome.succeeded(outputs)


def default_bodies(
    engine: Optional[ExprEngine] = None,
    decisions: Optional[DecisionEngine] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, StepBody]:
    """Built-in capabilities keyed by step_type"""
    bodies: Dict[str, StepBody] = {
        StepType.SCRIPT.value: ScriptStepBody(engine),
        StepType.GATEWAY.value: GatewayStepBody(),
        StepType.WAIT.value: WaitStepBody(clock),
        StepType.USER.value: UserTaskStepBody(),
        StepType.LOOP.value: LoopStepBody(),
        StepType.SERVICE.value: ServiceStepBody(),
        StepType.HTTP.value: HttpStepBody(http_transport),
    }
    if decisions is not None:
        bodies[StepType.DECISION.value] = DecisionStepBody(decisions)
    return bodies
