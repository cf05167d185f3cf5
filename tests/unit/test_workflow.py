"""Unit tests for workflow definitions, validation and lifecycle."""

import pytest

from exprsn_core.audit import AuditEventType
from exprsn_core.core.errors import ConflictError, NotFound, ValidationError
from exprsn_core.core.events import EventRegistry
from exprsn_core.workflow import (
    RetryConfig,
    RetryStrategy,
    Step,
    WorkflowService,
    WorkflowStatus,
    WorkflowValidator,
    build_workflow,
)


def step(step_id, step_type="script", **extra):
    return {"step_id": step_id, "step_type": step_type, **extra}


class TestModels:
    """Tests for definition models."""

    def test_condition_map_is_normalized(self):
        """Test that a condition mapping becomes routes plus a default."""
        gateway = Step.model_validate(
            step(
                "check",
                "gateway",
                conditions={'{"operator": "greaterThan", "operands": ["$amount", 100]}': "manual", "default": "auto"},
            )
        )

        assert gateway.conditions[0].next == "manual"
        assert gateway.conditions[0].when == {"operator": "greaterThan", "operands": ["$amount", 100]}
        assert gateway.next_steps == ["auto"]

    def test_error_handler_object_form(self):
        parsed = Step.model_validate(step("a", error_handler={"nextStep": "b"}))

        assert parsed.error_handler == "b"
        assert parsed.targets() == ["b"]

    def test_fixed_backoff(self):
        retry = RetryConfig(max_attempts=3, backoff_ms=100, strategy=RetryStrategy.FIXED)

        assert retry.get_delay_ms(1) == 100
        assert retry.get_delay_ms(2) == 100

    def test_exponential_backoff_is_capped(self):
        retry = RetryConfig(max_attempts=5, backoff_ms=100, strategy="exponential", multiplier=2)

        assert retry.get_delay_ms(3) == 400
        assert retry.get_delay_ms(10, cap_ms=1000) == 1000


class TestValidator:
    """Tests for static workflow validation."""

    def test_valid_workflow(self, workflow_definition):
        result = WorkflowValidator().validate(build_workflow(workflow_definition))

        assert result.valid
        assert result.errors == []

    def test_two_entry_steps(self):
        workflow = build_workflow({"name": "split", "steps": [step("a"), step("b")]})

        result = WorkflowValidator().validate(workflow)

        assert not result.valid
        assert "exactly one entry step" in result.errors[0].message

    def test_unknown_target(self):
        workflow = build_workflow({"name": "dangling", "steps": [step("a", next_steps=["ghost"])]})

        result = WorkflowValidator().validate(workflow)

        assert any("unknown step 'ghost'" in issue.message for issue in result.errors)

    def test_cycle_without_wait_is_rejected(self):
        workflow = build_workflow(
            {
                "name": "spin",
                "steps": [
                    step("start", next_steps=["a"]),
                    step("a", next_steps=["b"]),
                    step("b", next_steps=["a"]),
                ],
            }
        )

        result = WorkflowValidator().validate(workflow)

        assert any("no wait or loop step" in issue.message for issue in result.errors)

    def test_cycle_through_loop_is_allowed(self):
        workflow = build_workflow(
            {
                "name": "poll",
                "steps": [
                    step("start", next_steps=["tick"]),
                    step("tick", "loop", config={"max_iterations": 3}, next_steps=["check"]),
                    step(
                        "check",
                        "gateway",
                        conditions=[{"when": {"operator": "equals", "operands": ["$steps.tick.done", False]}, "next": "tick"}],
                        next_steps=["end"],
                    ),
                    step("end"),
                ],
            }
        )

        assert WorkflowValidator().validate(workflow).valid

    def test_gateway_overlap(self):
        workflow = build_workflow(
            {
                "name": "overlap",
                "steps": [
                    step("check", "gateway", conditions=[{"when": True, "next": "a"}], next_steps=["a"]),
                    step("a"),
                ],
            }
        )

        result = WorkflowValidator().validate(workflow)

        assert any("both conditionally and by default" in issue.message for issue in result.errors)

    def test_undeclared_variable(self):
        workflow = build_workflow({"name": "refs", "steps": [step("a", inputs={"x": "$nowhere"})]})

        result = WorkflowValidator().validate(workflow)

        assert result.errors[0].message == "$nowhere is not a declared variable"

    def test_downstream_step_reference(self):
        workflow = build_workflow(
            {
                "name": "order",
                "steps": [
                    step("a", inputs={"x": "$steps.b.value"}, next_steps=["b"]),
                    step("b"),
                ],
            }
        )

        result = WorkflowValidator().validate(workflow)

        assert "does not run before this point" in result.errors[0].message

    def test_malformed_expression(self):
        workflow = build_workflow(
            {"name": "bad", "steps": [step("a", inputs={"x": {"operator": "frobnicate", "operands": []}})]}
        )

        result = WorkflowValidator().validate(workflow)

        assert result.errors[0].path.startswith("steps.a.inputs.x")

    def test_empty_workflow_is_a_warning(self):
        result = WorkflowValidator().validate(build_workflow({"name": "empty"}))

        assert result.valid
        assert len(result.warnings) == 1


class TestWorkflowService:
    """Tests for the workflow service."""

    @pytest.mark.asyncio
    async def test_create_workflow(self, workflows, workflow_definition, audit):
        """Test creating a workflow stores it under the actor."""
        workflow = await workflows.create_workflow(workflow_definition, actor="u1")

        assert workflow.owner_id == "u1"
        assert workflow.status == WorkflowStatus.DRAFT
        assert (await workflows.get_workflow(workflow.id)).name == "approvals"
        assert audit.count(AuditEventType.WORKFLOW_CREATE) == 1

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, workflows, make_workflow):
        existing = await workflows.create_workflow(make_workflow(), actor="u1")

        with pytest.raises(ConflictError) as exc_info:
            await workflows.create_workflow(make_workflow(), actor="u1")

        assert exc_info.value.existing_id == existing.id
        other = await workflows.create_workflow(make_workflow(), actor="u2")
        assert other.id != existing.id

    @pytest.mark.asyncio
    async def test_invalid_definition_is_rejected(self, workflows, audit):
        with pytest.raises(ValidationError):
            await workflows.create_workflow({"name": "split", "steps": [step("a"), step("b")]}, actor="u1")

        failures = audit.query(AuditEventType.WORKFLOW_CREATE, success=False)
        assert failures[0].error_kind == "ValidationError"

    @pytest.mark.asyncio
    async def test_update_bumps_version_on_step_change(self, workflows, workflow_definition):
        workflow = await workflows.create_workflow(workflow_definition, actor="u1")

        renamed = await workflows.update_workflow(workflow.id, {"description": "renamed"})
        assert renamed.version == 1

        steps = [s.model_dump() for s in workflow.steps]
        steps[1]["name"] = "Label total"
        updated = await workflows.update_workflow(workflow.id, {"steps": steps})
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_update_cannot_overwrite_statistics(self, workflows, workflow_definition):
        workflow = await workflows.create_workflow(workflow_definition)

        updated = await workflows.update_workflow(workflow.id, {"execution_count": 99})

        assert updated.execution_count == 0

    @pytest.mark.asyncio
    async def test_status_transitions(self, workflow_definition):
        events = EventRegistry("test")
        service = WorkflowService(events=events)
        received = []

        async def listener(event):
            received.append(event.type)

        events.subscribe("workflows", listener)
        workflow = await service.create_workflow(workflow_definition)

        active = await service.activate(workflow.id)
        archived = await service.archive(workflow.id)

        assert active.status == WorkflowStatus.ACTIVE
        assert archived.status == WorkflowStatus.ARCHIVED
        assert received == ["workflow:created", "workflow:status", "workflow:status"]

    @pytest.mark.asyncio
    async def test_activate_requires_steps(self, workflows):
        workflow = await workflows.create_workflow({"name": "empty"})

        with pytest.raises(ValidationError):
            await workflows.activate(workflow.id)

    @pytest.mark.asyncio
    async def test_delete_workflow(self, workflows, workflow_definition):
        workflow = await workflows.create_workflow(workflow_definition)

        await workflows.delete_workflow(workflow.id)

        with pytest.raises(NotFound):
            await workflows.get_workflow(workflow.id)

    @pytest.mark.asyncio
    async def test_list_filters(self, workflows, make_workflow):
        await workflows.create_workflow(make_workflow("a", tags=["billing"]), actor="u1")
        await workflows.create_workflow(make_workflow("b", tags=["ops"]), actor="u1")
        await workflows.create_workflow(make_workflow("c"), actor="u2")

        billing = await workflows.list_workflows(tag="billing")
        mine = await workflows.list_workflows(owner_id="u1")

        assert [w.name for w in billing] == ["a"]
        assert {w.name for w in mine} == {"a", "b"}
