"""Unit tests for cron parsing and the workflow scheduler."""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest
import pytz

from exprsn_core.audit import AuditEventType
from exprsn_core.core.config import CatchUpPolicy
from exprsn_core.core.errors import NotFound, ValidationError
from exprsn_core.scheduling import (
    CronExpression,
    SchedulePresets,
    WorkflowScheduler,
    daily_at,
    describe,
    monthly_on,
    validate_cron,
    weekly_on,
)


def utc(*args):
    return pytz.utc.localize(datetime(*args))


class TestCronExpression:
    """Tests for cron parsing and next occurrences."""

    def test_step_field(self):
        expr = CronExpression("*/15 * * * *")

        assert expr.next_occurrence(datetime(2024, 1, 15, 12, 7)) == utc(2024, 1, 15, 12, 15)

    def test_next_is_strictly_after(self):
        expr = CronExpression("0 * * * *")

        assert expr.next_occurrence(datetime(2024, 1, 15, 12, 0)) == utc(2024, 1, 15, 13, 0)

    def test_weekday_schedule_in_time_zone(self):
        """Test that fields are interpreted in the schedule's zone."""
        expr = CronExpression("30 8 * * 1-5")

        result = expr.next_occurrence(datetime(2024, 3, 1, 12, 0), tz="Europe/Berlin")

        assert result.astimezone(pytz.utc) == utc(2024, 3, 4, 7, 30)
        assert result.tzinfo.zone == "Europe/Berlin"

    def test_skipped_wall_clock_time_never_fires(self):
        expr = CronExpression("30 2 * * *")

        result = expr.next_occurrence(datetime(2024, 3, 30, 12, 0), tz="Europe/Berlin")

        assert result.astimezone(pytz.utc) == utc(2024, 4, 1, 0, 30)

    def test_repeated_wall_clock_time_fires_once(self):
        expr = CronExpression("30 2 * * *")

        first, second = expr.next_occurrences(2, datetime(2024, 10, 26, 12, 0), tz="Europe/Berlin")

        assert first.astimezone(pytz.utc) == utc(2024, 10, 27, 0, 30)
        assert second.astimezone(pytz.utc) == utc(2024, 10, 28, 1, 30)

    def test_day_of_month_or_day_of_week(self):
        expr = CronExpression("0 0 13 * 5")

        assert expr.next_occurrence(datetime(2024, 9, 1)) == utc(2024, 9, 6, 0, 0)
        assert expr.next_occurrence(datetime(2024, 9, 10)) == utc(2024, 9, 13, 0, 0)

    def test_last_day_of_month(self):
        expr = CronExpression("0 18 L * *")

        assert expr.next_occurrence(datetime(2024, 2, 10)) == utc(2024, 2, 29, 18, 0)

    def test_names_and_aliases(self):
        assert CronExpression("@daily") == CronExpression("0 0 * * *")
        assert CronExpression("0 9 * JAN-MAR MON").matches(datetime(2024, 2, 5, 9, 0))
        assert CronExpression("0 0 * * 7").weekdays == {0}

    @pytest.mark.parametrize(
        "expression,valid",
        [
            ("*/5 * * * *", True),
            ("0 9-17 * * MON-FRI", True),
            ("61 * * * *", False),
            ("* * *", False),
            ("*/0 * * * *", False),
            ("0 0 32 * *", False),
        ],
    )
    def test_validate_cron(self, expression, valid):
        assert validate_cron(expression) is valid

    def test_unknown_time_zone(self):
        with pytest.raises(ValidationError):
            CronExpression("0 * * * *").next_occurrence(datetime(2024, 1, 1), tz="Mars/Olympus")


class TestDescriptions:
    """Tests for descriptions, presets and builders."""

    def test_common_descriptions(self):
        assert describe("0 9 * * 1-5") == "Weekdays at 9:00 AM"
        assert describe("@hourly") == "Every hour"

    def test_generic_description(self):
        assert describe("15 3 * * *") == "At minute 15, hour 3"
        assert describe("0 18 L * *") == "At minute 0, hour 18, on the last day of the month"

    def test_builders(self):
        assert daily_at(9, 30) == "30 9 * * *"
        assert weekly_on("MON", 12) == "0 12 * * MON"
        assert monthly_on("L", 18) == "0 18 L * *"

    def test_presets(self):
        presets = SchedulePresets.all()

        assert presets["daily"] == "0 0 * * *"
        assert all(validate_cron(value) for value in presets.values())


@pytest.fixture
def trigger():
    return AsyncMock(return_value="exec_1")


@pytest.fixture
def scheduler(trigger, audit, clock):
    return WorkflowScheduler(trigger, audit=audit, clock=clock)


class TestWorkflowScheduler:
    """Tests for registration and firing."""

    @pytest.mark.asyncio
    async def test_schedule_and_tick(self, scheduler, trigger, clock, audit):
        """Test a due schedule fires once and moves to its next instant."""
        entry = await scheduler.schedule("wf_1", "*/5 * * * *", input_data={"source": "cron"})

        assert entry.next_run_at == datetime(2024, 1, 15, 12, 5)
        assert await scheduler.tick() == 0

        clock.advance(minutes=5)
        assert await scheduler.tick() == 1

        trigger.assert_awaited_once_with("wf_1", input_data={"source": "cron"}, trigger="scheduled", actor=None)
        info = scheduler.get_schedule_info("wf_1")
        assert info["next_run_at"] == "2024-01-15T12:10:00"
        assert info["fire_count"] == 1
        assert audit.count(AuditEventType.SCHEDULE_FIRE) == 1

    @pytest.mark.asyncio
    async def test_disabled_schedule_does_not_fire(self, scheduler, trigger, clock):
        await scheduler.schedule("wf_1", "* * * * *")
        await scheduler.disable("wf_1")

        clock.advance(minutes=10)

        assert await scheduler.tick() == 0
        trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_schedule_is_audited(self, scheduler, audit):
        with pytest.raises(ValidationError):
            await scheduler.schedule("wf_1", "not a cron")

        failures = audit.query(AuditEventType.SCHEDULE_CREATE, success=False)
        assert failures[0].error_kind == "ValidationError"

    @pytest.mark.asyncio
    async def test_trigger_failure_is_recorded(self, audit, clock):
        trigger = AsyncMock(side_effect=ValidationError("Workflow 'nightly' is inactive"))
        scheduler = WorkflowScheduler(trigger, audit=audit, clock=clock)
        await scheduler.schedule("wf_1", "* * * * *")

        clock.advance(minutes=1)
        await scheduler.tick()

        assert scheduler.get_metrics()["fire_failures"] == 1
        assert audit.query(AuditEventType.SCHEDULE_FIRE)[0].success is False

    @pytest.mark.asyncio
    async def test_unexpected_trigger_error_does_not_stop_the_tick(self, audit, clock):
        """Test that a crashing trigger is recorded and later due schedules still fire."""

        async def fire(workflow_id, **kwargs):
            if workflow_id == "wf_a":
                raise RuntimeError("executor crashed")
            return "exec_b"

        trigger = AsyncMock(side_effect=fire)
        scheduler = WorkflowScheduler(trigger, audit=audit, clock=clock)
        await scheduler.schedule("wf_a", "* * * * *")
        await scheduler.schedule("wf_b", "* * * * *")

        clock.advance(minutes=1)
        assert await scheduler.tick() == 2

        assert [call.args[0] for call in trigger.await_args_list] == ["wf_a", "wf_b"]
        metrics = scheduler.get_metrics()
        assert metrics["fire_failures"] == 1
        assert metrics["fires"] == 1
        failed = audit.query(AuditEventType.SCHEDULE_FIRE, success=False)
        assert [(r.target_ids, r.error_kind) for r in failed] == [(("wf_a",), "RuntimeError")]
        assert scheduler.get_schedule_info("wf_b")["next_run_at"] == "2024-01-15T12:02:00"

    @pytest.mark.asyncio
    async def test_next_executions(self, scheduler):
        await scheduler.schedule("wf_1", SchedulePresets.HOURLY)

        assert scheduler.next_executions("wf_1", 3) == [
            datetime(2024, 1, 15, 13, 0),
            datetime(2024, 1, 15, 14, 0),
            datetime(2024, 1, 15, 15, 0),
        ]

    @pytest.mark.asyncio
    async def test_trigger_now_and_unschedule(self, scheduler, trigger):
        await scheduler.schedule("wf_1", "@daily")

        await scheduler.trigger_now("wf_1", actor="u1")
        trigger.assert_awaited_once_with("wf_1", input_data={}, trigger="manual", actor="u1")

        assert await scheduler.unschedule("wf_1") is True
        with pytest.raises(NotFound):
            await scheduler.trigger_now("wf_1")

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        await scheduler.start()
        assert scheduler.is_running

        await scheduler.stop()
        assert not scheduler.is_running


class TestCatchUp:
    """Tests for restoring schedules after downtime."""

    STATE = [
        {
            "workflow_id": "wf_1",
            "schedule": "0 * * * *",
            "timezone": "UTC",
            "enabled": True,
            "input_data": {},
            "next_run_at": "2024-01-15T09:00:00",
            "last_run_at": "2024-01-15T08:00:00",
            "fire_count": 3,
        }
    ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "policy,expected",
        [(CatchUpPolicy.ONE, 1), (CatchUpPolicy.ALL, 4), (CatchUpPolicy.NONE, 0)],
    )
    async def test_missed_fires(self, scheduler, trigger, policy, expected):
        fired = await scheduler.restore(self.STATE, policy=policy)

        assert fired == expected
        assert trigger.await_count == expected
        info = scheduler.get_schedule_info("wf_1")
        assert info["fire_count"] == 3 + expected
        assert info["next_run_at"] == "2024-01-15T13:00:00"

    @pytest.mark.asyncio
    async def test_export_then_restore(self, scheduler, trigger, audit, clock):
        await scheduler.schedule("wf_1", "0 * * * *")
        state = scheduler.export_state()

        clock.advance(hours=3)
        restarted = WorkflowScheduler(trigger, audit=audit, clock=clock)
        fired = await restarted.restore(state)

        assert fired == 1
        assert trigger.await_args.kwargs["trigger"] == "scheduled"


class TestRepositorySync:
    """Tests for syncing schedules from workflow definitions."""

    @pytest.mark.asyncio
    async def test_sync_active_scheduled_workflows(self, workflows, trigger, audit, clock, make_workflow):
        scheduler = WorkflowScheduler(trigger, workflows=workflows, audit=audit, clock=clock)
        workflow = await workflows.create_workflow(
            make_workflow(
                "nightly",
                trigger_type="scheduled",
                trigger_config={"schedule": "0 9 * * *", "timezone": "Europe/Berlin"},
            )
        )

        assert await scheduler.sync_from_repository() == []

        await workflows.activate(workflow.id)
        assert await scheduler.sync_from_repository() == [workflow.id]
        assert scheduler.get_schedule_info(workflow.id)["timezone"] == "Europe/Berlin"

        await workflows.deactivate(workflow.id)
        await scheduler.sync_from_repository()
        assert scheduler.get_schedule_info(workflow.id) == {"scheduled": False, "workflow_id": workflow.id}

    @pytest.mark.asyncio
    async def test_update_persists_trigger_config(self, workflows, trigger, clock, make_workflow):
        scheduler = WorkflowScheduler(trigger, workflows=workflows, clock=clock)
        workflow = await workflows.create_workflow(
            make_workflow("nightly", trigger_type="scheduled", trigger_config={"schedule": "0 9 * * *"})
        )
        await workflows.activate(workflow.id)
        await scheduler.sync_from_repository()

        await scheduler.update_schedule(workflow.id, spec="0 10 * * *")

        stored = await workflows.get_workflow(workflow.id)
        assert stored.trigger_config["schedule"] == "0 10 * * *"
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_sync_without_service(self, scheduler):
        with pytest.raises(ValidationError):
            await scheduler.sync_from_repository()
