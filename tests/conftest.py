"""Shared pytest fixtures for testing."""

from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from exprsn_core.audit import AuditLog
from exprsn_core.core.cache import InMemoryCacheBackend
from exprsn_core.decisions import DecisionEngine
from exprsn_core.exprlang import ExprEngine
from exprsn_core.parameters import ParameterStore
from exprsn_core.workflow import WorkflowExecutor, WorkflowService


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic seconds counter for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def audit(clock: FakeClock) -> AuditLog:
    return AuditLog(clock=clock)


@pytest.fixture
def engine() -> ExprEngine:
    return ExprEngine()


@pytest.fixture
def cache(monotonic: FakeMonotonic) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=monotonic)


@pytest.fixture
def decisions(audit: AuditLog, clock: FakeClock) -> DecisionEngine:
    return DecisionEngine(audit=audit, clock=clock)


@pytest.fixture
def parameters(engine: ExprEngine, cache: InMemoryCacheBackend, audit: AuditLog, clock: FakeClock) -> ParameterStore:
    return ParameterStore(engine=engine, cache=cache, audit=audit, clock=clock)


@pytest.fixture
def workflows(audit: AuditLog, clock: FakeClock) -> WorkflowService:
    return WorkflowService(audit=audit, clock=clock)


@pytest_asyncio.fixture
async def executor(workflows: WorkflowService, decisions: DecisionEngine, audit: AuditLog, sleeper: RecordingSleep):
    """Executor with instant retry backoff."""
    executor = WorkflowExecutor(workflows, decisions=decisions, audit=audit, sleep=sleeper)
    yield executor
    await executor.shutdown()


# =============================================================================
# Test Data Fixtures
# =============================================================================


def linear_workflow(name: str = "approvals", **overrides: Any) -> Dict[str, Any]:
    """Two script steps: compute a total, then label it."""
    definition: Dict[str, Any] = {
        "name": name,
        "description": "Compute and label an order total",
        "variables": {"currency": "EUR"},
        "steps": [
            {
                "step_id": "total",
                "step_type": "script",
                "name": "Total",
                "inputs": {"amount": "$input.amount"},
                "config": {"outputs": {"total": {"operator": "multiply", "operands": ["$amount", 2]}}},
                "outputs": {"total": "total"},
                "next_steps": ["label"],
                "order": 0,
            },
            {
                "step_id": "label",
                "step_type": "script",
                "name": "Label",
                "inputs": {"text": {"operator": "concat", "operands": ["$total", " ", "$currency"]}},
                "order": 1,
            },
        ],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def make_workflow():
    """Factory for the two-step script workflow."""
    return linear_workflow


@pytest.fixture
def workflow_definition() -> Dict[str, Any]:
    return linear_workflow()
