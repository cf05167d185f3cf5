"""Unit tests for runtime assembly."""

import pytest
import pytest_asyncio

from exprsn_core.core.cache import InMemoryCacheBackend
from exprsn_core.core.config import Settings
from exprsn_core.runtime import create_runtime
from exprsn_core.workflow import ExecutionStatus


@pytest_asyncio.fixture
async def runtime(clock, sleeper):
    runtime = create_runtime(Settings(), configure_logging=False, clock=clock, sleep=sleeper)
    await runtime.start()
    yield runtime
    await runtime.stop()


class TestRuntime:
    """Tests for the assembled components."""

    def test_defaults_to_memory_cache(self):
        runtime = create_runtime(Settings(), configure_logging=False)

        assert isinstance(runtime.cache, InMemoryCacheBackend)
        assert not runtime.is_running

    @pytest.mark.asyncio
    async def test_components_share_audit_log(self, runtime, make_workflow):
        workflow = await runtime.workflows.create_workflow(make_workflow(), actor="u1")

        execution = await runtime.executor.start(workflow.id, {"amount": 2}, actor="u1")
        envelope = await runtime.transfer.export_workflow(workflow.id, actor="u1")

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert envelope["workflow"]["name"] == "approvals"
        assert {r.event_type for r in runtime.audit.query(actor="u1")} >= {
            "workflow_create",
            "execution_transition",
            "workflow_export",
        }

    @pytest.mark.asyncio
    async def test_scheduler_drives_executor(self, runtime, make_workflow):
        """Test that a manual fire of a scheduled workflow runs it through the executor."""
        workflow = await runtime.workflows.create_workflow(
            make_workflow(
                "nightly",
                trigger_type="scheduled",
                trigger_config={"schedule": "0 2 * * *", "input_data": {"amount": 7}},
            )
        )
        await runtime.workflows.activate(workflow.id)
        assert await runtime.scheduler.sync_from_repository() == [workflow.id]

        execution_id = await runtime.scheduler.trigger_now(workflow.id)
        execution = await runtime.executor.wait_for(execution_id, timeout=5)

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert execution.step_outputs["label"] == {"text": "14 EUR"}

    @pytest.mark.asyncio
    async def test_metrics(self, runtime):
        metrics = runtime.get_metrics()

        assert set(metrics) == {"executor", "scheduler", "collaboration", "streams", "events"}
        assert runtime.is_running
