"""
Workflow Scheduler
==================

Cron-driven workflow triggers.

Features:
- Cron expressions and presets evaluated in a named time zone
- Fires enqueue an execution with trigger=scheduled and never block
- Enable / disable / update without losing cadence
- Sync from the workflow repository (active workflows with trigger_type=scheduled)
- Restart catch-up for missed fires (one, all or none)
- Audit records for registrations and fires

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import pytz
import structlog

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.config import CatchUpPolicy, SchedulerConfig
from exprsn_core.core.errors import ExprsnError, NotFound, ValidationError, error_kind
from exprsn_core.scheduling.cron import CronExpression, describe, get_timezone
from exprsn_core.workflow.models import TriggerType, WorkflowStatus
from exprsn_core.workflow.service import WorkflowService

logger = structlog.get_logger(__name__)

# (workflow_id, input_data, trigger, actor) -> execution id
TriggerCallable = Callable[..., Awaitable[str]]


def _utc_naive(dt: datetime) -> datetime:
    return dt.astimezone(pytz.utc).replace(tzinfo=None)


@dataclass
class ScheduleEntry:
    """A registered workflow trigger"""

    workflow_id: str
    expression: CronExpression
    timezone: str = "UTC"
    enabled: bool = True
    input_data: Dict[str, Any] = field(default_factory=dict)
    next_run_at: Optional[datetime] = None  # naive UTC
    last_run_at: Optional[datetime] = None
    fire_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def schedule(self) -> str:
        return self.expression.source

    def compute_next(self, after: datetime) -> datetime:
        return _utc_naive(self.expression.next_occurrence(after, self.timezone))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "schedule": self.schedule,
            "timezone": self.timezone,
            "enabled": self.enabled,
            "input_data": self.input_data,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "fire_count": self.fire_count,
        }


class WorkflowScheduler:
    """
    Scheduled workflow triggering.

    Usage:
        scheduler = WorkflowScheduler(executor.enqueue, workflows=workflow_service)
        await scheduler.sync_from_repository()
        await scheduler.schedule(workflow.id, SchedulePresets.DAILY, tz="America/New_York")
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        trigger: TriggerCallable,
        workflows: Optional[WorkflowService] = None,
        audit: Optional[AuditLog] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._trigger = trigger
        self._workflows = workflows
        self._audit = audit or AuditLog()
        self._config = config or SchedulerConfig()
        self._clock = clock

        self._entries: Dict[str, ScheduleEntry] = {}
        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger("workflow_scheduler")
        self._metrics = {
            "fires": 0,
            "fire_failures": 0,
            "catch_up_fires": 0,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the due-check loop"""
        if self._running:
            return
        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self._logger.info("scheduler_started", schedules=len(self._entries))

    async def stop(self) -> None:
        """Stop the due-check loop"""
        self._running = False
        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None
        self._logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def schedule(
        self,
        workflow_id: str,
        spec: str,
        tz: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        enabled: bool = True,
        actor: Optional[str] = None,
    ) -> ScheduleEntry:
        """Register (or replace) the trigger of a workflow"""
        try:
            entry = self._build_entry(workflow_id, spec, tz, input_data, enabled)
        except ValidationError as e:
            self._audit.record(
                AuditEventType.SCHEDULE_CREATE,
                actor=actor,
                target_ids=[workflow_id],
                success=False,
                error_kind=error_kind(e),
                schedule=spec,
            )
            raise

        async with self._lock:
            self._entries[workflow_id] = entry

        self._audit.record(
            AuditEventType.SCHEDULE_CREATE,
            actor=actor,
            target_ids=[workflow_id],
            schedule=entry.schedule,
            timezone=entry.timezone,
            enabled=entry.enabled,
        )
        self._logger.info(
            "workflow_scheduled",
            workflow_id=workflow_id,
            schedule=entry.schedule,
            timezone=entry.timezone,
            next_run_at=entry.next_run_at.isoformat() if entry.next_run_at else None,
        )
        return copy.deepcopy(entry)

    async def unschedule(self, workflow_id: str, actor: Optional[str] = None) -> bool:
        async with self._lock:
            entry = self._entries.pop(workflow_id, None)
        if entry is None:
            return False

        self._audit.record(AuditEventType.SCHEDULE_DELETE, actor=actor, target_ids=[workflow_id])
        self._logger.info("workflow_unscheduled", workflow_id=workflow_id)
        return True

    async def update_schedule(
        self,
        workflow_id: str,
        spec: Optional[str] = None,
        tz: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None,
        enabled: Optional[bool] = None,
        actor: Optional[str] = None,
    ) -> ScheduleEntry:
        """
        Change parts of a registered schedule.

        When a workflow service is attached, the workflow's trigger_config is
        updated as well so a later sync keeps the change.
        """
        current = self._entries.get(workflow_id)
        if current is None:
            raise NotFound(f"Workflow {workflow_id} is not scheduled")

        entry = self._build_entry(
            workflow_id,
            spec if spec is not None else current.schedule,
            tz if tz is not None else current.timezone,
            input_data if input_data is not None else current.input_data,
            enabled if enabled is not None else current.enabled,
        )
        entry.last_run_at = current.last_run_at
        entry.fire_count = current.fire_count
        entry.created_at = current.created_at

        async with self._lock:
            self._entries[workflow_id] = entry

        await self._persist(entry, actor)
        self._audit.record(
            AuditEventType.SCHEDULE_UPDATE,
            actor=actor,
            target_ids=[workflow_id],
            schedule=entry.schedule,
            timezone=entry.timezone,
            enabled=entry.enabled,
        )
        self._logger.info("schedule_updated", workflow_id=workflow_id, schedule=entry.schedule)
        return copy.deepcopy(entry)

    async def enable(self, workflow_id: str, actor: Optional[str] = None) -> ScheduleEntry:
        return await self.update_schedule(workflow_id, enabled=True, actor=actor)

    async def disable(self, workflow_id: str, actor: Optional[str] = None) -> ScheduleEntry:
        return await self.update_schedule(workflow_id, enabled=False, actor=actor)

    def _build_entry(
        self,
        workflow_id: str,
        spec: str,
        tz: Optional[str],
        input_data: Optional[Dict[str, Any]],
        enabled: bool,
    ) -> ScheduleEntry:
        if not spec or not isinstance(spec, str):
            raise ValidationError("Schedule specification is missing")
        timezone = tz or self._config.default_timezone
        get_timezone(timezone)

        entry = ScheduleEntry(
            workflow_id=workflow_id,
            expression=CronExpression(spec),
            timezone=timezone,
            enabled=enabled,
            input_data=copy.deepcopy(input_data or {}),
            created_at=self._clock(),
        )
        entry.next_run_at = entry.compute_next(self._clock())
        return entry

    async def _persist(self, entry: ScheduleEntry, actor: Optional[str]) -> None:
        if self._workflows is None:
            return
        workflow = await self._workflows.get_workflow(entry.workflow_id)
        trigger_config = {
            **workflow.trigger_config,
            "schedule": entry.schedule,
            "timezone": entry.timezone,
            "enabled": entry.enabled,
            "input_data": entry.input_data,
        }
        await self._workflows.update_workflow(
            entry.workflow_id,
            {"trigger_type": TriggerType.SCHEDULED, "trigger_config": trigger_config},
            actor=actor,
            bump_version=False,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_schedule_info(self, workflow_id: str) -> Dict[str, Any]:
        entry = self._entries.get(workflow_id)
        if entry is None:
            return {"scheduled": False, "workflow_id": workflow_id}
        return {
            "scheduled": True,
            **entry.to_dict(),
            "next_executions": [dt.isoformat() for dt in self.next_executions(workflow_id, 5)],
            "description": describe(entry.schedule),
        }

    def next_executions(self, workflow_id: str, count: int = 5) -> List[datetime]:
        """Next ``count`` fire instants (naive UTC)"""
        entry = self._entries.get(workflow_id)
        if entry is None:
            raise NotFound(f"Workflow {workflow_id} is not scheduled")
        return [
            _utc_naive(dt)
            for dt in entry.expression.next_occurrences(count, self._clock(), entry.timezone)
        ]

    def list_schedules(self, enabled: Optional[bool] = None) -> List[Dict[str, Any]]:
        return [
            {**entry.to_dict(), "description": describe(entry.schedule)}
            for entry in sorted(self._entries.values(), key=lambda e: (e.next_run_at or datetime.max, e.workflow_id))
            if enabled is None or entry.enabled == enabled
        ]

    # -------------------------------------------------------------------------
    # Repository sync
    # -------------------------------------------------------------------------

    async def sync_from_repository(self, actor: Optional[str] = None) -> List[str]:
        """
        Schedule every active workflow with trigger_type=scheduled and drop
        entries whose workflow no longer qualifies. Per-workflow failures are
        logged and skipped.
        """
        if self._workflows is None:
            raise ValidationError("Scheduler has no workflow service attached")

        workflows = await self._workflows.list_workflows(status=WorkflowStatus.ACTIVE)
        qualifying = {w.id: w for w in workflows if w.trigger_type == TriggerType.SCHEDULED}

        for workflow_id in list(self._entries):
            if workflow_id not in qualifying:
                await self.unschedule(workflow_id, actor=actor)

        scheduled = []
        for workflow in qualifying.values():
            config = workflow.trigger_config or {}
            try:
                current = self._entries.get(workflow.id)
                if (
                    current is not None
                    and current.schedule == config.get("schedule")
                    and current.timezone == (config.get("timezone") or self._config.default_timezone)
                ):
                    current.enabled = bool(config.get("enabled", True))
                    current.input_data = copy.deepcopy(config.get("input_data") or config.get("inputData") or {})
                else:
                    await self.schedule(
                        workflow.id,
                        config.get("schedule"),
                        tz=config.get("timezone"),
                        input_data=config.get("input_data") or config.get("inputData"),
                        enabled=bool(config.get("enabled", True)),
                        actor=actor,
                    )
                scheduled.append(workflow.id)
            except ValidationError as e:
                self._logger.error("schedule_sync_failed", workflow_id=workflow.id, error=e.message)

        self._logger.info("schedules_synced", scheduled=len(scheduled))
        return scheduled

    # -------------------------------------------------------------------------
    # Persistence & catch-up
    # -------------------------------------------------------------------------

    def export_state(self) -> List[Dict[str, Any]]:
        """Serializable state for restore() after a restart"""
        return [entry.to_dict() for entry in self._entries.values()]

    async def restore(
        self,
        state: List[Dict[str, Any]],
        policy: Optional[CatchUpPolicy] = None,
    ) -> int:
        """
        Re-register persisted schedules and fire what was missed while down.

        Policies:
            one: at most one catch-up fire per schedule
            all: every missed fire, bounded by max_catch_up
            none: skip missed fires

        Returns the number of catch-up fires.
        """
        policy = CatchUpPolicy(policy or self._config.catch_up)
        now = self._clock()
        fired = 0

        for item in state:
            entry = self._build_entry(
                item["workflow_id"],
                item["schedule"],
                item.get("timezone"),
                item.get("input_data"),
                bool(item.get("enabled", True)),
            )
            entry.fire_count = int(item.get("fire_count", 0))
            if item.get("last_run_at"):
                entry.last_run_at = datetime.fromisoformat(item["last_run_at"])
            if item.get("next_run_at"):
                entry.next_run_at = datetime.fromisoformat(item["next_run_at"])

            async with self._lock:
                self._entries[entry.workflow_id] = entry

            if entry.enabled:
                fired += await self._catch_up(entry, now, policy)
            entry.next_run_at = entry.compute_next(now)

        self._logger.info("schedules_restored", schedules=len(state), catch_up_fires=fired, policy=policy.value)
        return fired

    async def _catch_up(self, entry: ScheduleEntry, now: datetime, policy: CatchUpPolicy) -> int:
        if entry.next_run_at is None or entry.next_run_at > now:
            return 0

        missed = 0
        cursor = entry.next_run_at
        while cursor <= now and missed < self._config.max_catch_up:
            missed += 1
            cursor = entry.compute_next(cursor)

        if policy == CatchUpPolicy.NONE:
            count = 0
        elif policy == CatchUpPolicy.ONE:
            count = 1
        else:
            count = missed

        self._logger.info(
            "schedule_catch_up",
            workflow_id=entry.workflow_id,
            missed=missed,
            firing=count,
            policy=policy.value,
        )
        for _ in range(count):
            await self._fire(entry, now, catch_up=True)
        self._metrics["catch_up_fires"] += count
        return count

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    async def trigger_now(self, workflow_id: str, actor: Optional[str] = None) -> str:
        """Enqueue an execution of a scheduled workflow immediately"""
        entry = self._entries.get(workflow_id)
        if entry is None:
            raise NotFound(f"Workflow {workflow_id} is not scheduled")

        execution_id = await self._trigger(
            workflow_id,
            input_data=copy.deepcopy(entry.input_data),
            trigger=TriggerType.MANUAL.value,
            actor=actor,
        )
        self._logger.info(
            "scheduled_workflow_triggered_manually",
            workflow_id=workflow_id,
            execution_id=execution_id,
            actor=actor,
        )
        return execution_id

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Fire every enabled schedule that is due; returns the number fired"""
        now = now or self._clock()
        async with self._lock:
            due = [
                entry for entry in self._entries.values()
                if entry.enabled and entry.next_run_at is not None and entry.next_run_at <= now
            ]
            for entry in due:
                entry.next_run_at = entry.compute_next(now)

        for entry in due:
            await self._fire(entry, now)
        return len(due)

    async def _fire(self, entry: ScheduleEntry, now: datetime, catch_up: bool = False) -> Optional[str]:
        entry.last_run_at = now
        entry.fire_count += 1
        try:
            execution_id = await self._trigger(
                entry.workflow_id,
                input_data=copy.deepcopy(entry.input_data),
                trigger=TriggerType.SCHEDULED.value,
                actor=None,
            )
        except Exception as e:
            self._metrics["fire_failures"] += 1
            self._audit.record(
                AuditEventType.SCHEDULE_FIRE,
                target_ids=[entry.workflow_id],
                success=False,
                error_kind=error_kind(e),
                schedule=entry.schedule,
                timezone=entry.timezone,
                catch_up=catch_up,
            )
            self._logger.error(
                "scheduled_execution_failed",
                workflow_id=entry.workflow_id,
                error=str(e),
                exc_info=not isinstance(e, ExprsnError),
            )
            return None

        self._metrics["fires"] += 1
        self._audit.record(
            AuditEventType.SCHEDULE_FIRE,
            target_ids=[entry.workflow_id, execution_id],
            schedule=entry.schedule,
            timezone=entry.timezone,
            catch_up=catch_up,
        )
        self._logger.info(
            "schedule_fired",
            workflow_id=entry.workflow_id,
            execution_id=execution_id,
            catch_up=catch_up,
        )
        return execution_id

    async def _scheduler_loop(self) -> None:
        """Background loop firing due schedules"""
        while self._running:
            try:
                await asyncio.sleep(self._config.check_interval_s)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error("scheduler_loop_error", error=str(e), exc_info=True)

    # -------------------------------------------------------------------------
    # Status & Metrics
    # -------------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics,
            "schedules": len(self._entries),
            "enabled": sum(1 for e in self._entries.values() if e.enabled),
            "running": self._running,
        }
