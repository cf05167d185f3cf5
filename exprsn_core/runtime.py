"""
Runtime Assembly
================

Wires every component of the core around one set of shared
infrastructure (settings, audit log, cache backend, expression engine).

Usage:
    runtime = create_runtime()
    await runtime.start()

    workflow = await runtime.workflows.create_workflow({...}, actor="u1")
    execution = await runtime.executor.start(workflow.id, {"amount": 5})

    await runtime.stop()

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from exprsn_core.audit import AuditLog
from exprsn_core.collaboration import CollaborationManager
from exprsn_core.core.cache import CacheBackend, create_cache_backend
from exprsn_core.core.config import Settings, get_settings
from exprsn_core.core.events import EventRegistry
from exprsn_core.core.logging import setup_logging
from exprsn_core.decisions import DecisionEngine
from exprsn_core.exprlang import ExprEngine
from exprsn_core.parameters import ParameterStore
from exprsn_core.scheduling import WorkflowScheduler
from exprsn_core.streaming import StreamEngine
from exprsn_core.transfer import ImportExportService
from exprsn_core.workflow import (
    ExecutionStore,
    WorkflowExecutor,
    WorkflowRepository,
    WorkflowService,
)

logger = structlog.get_logger(__name__)


class Runtime:
    """Every component, sharing one audit log and one cache backend"""

    def __init__(
        self,
        settings: Settings,
        cache: CacheBackend,
        audit: AuditLog,
        workflow_repository: Optional[WorkflowRepository] = None,
        execution_store: Optional[ExecutionStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.settings = settings
        self.cache = cache
        self.audit = audit
        self.events = EventRegistry("runtime")

        self.engine = ExprEngine()
        self.parameters = ParameterStore(
            engine=self.engine,
            cache=cache,
            audit=audit,
            config=settings.parameters,
            clock=clock,
        )
        self.decisions = DecisionEngine(audit=audit, clock=clock)
        self.workflows = WorkflowService(
            repository=workflow_repository,
            audit=audit,
            events=self.events,
            clock=clock,
        )
        self.executor = WorkflowExecutor(
            self.workflows,
            store=execution_store,
            engine=self.engine,
            decisions=self.decisions,
            audit=audit,
            config=settings.executor,
            clock=clock,
            sleep=sleep,
        )
        self.scheduler = WorkflowScheduler(
            self.executor.enqueue,
            workflows=self.workflows,
            audit=audit,
            config=settings.scheduler,
            clock=clock,
        )
        self.transfer = ImportExportService(self.workflows, audit=audit, clock=clock)
        self.collaboration = CollaborationManager(config=settings.collaboration)
        self.streams = StreamEngine(cache=cache, defaults=settings.streaming, sleep=sleep)

        self._started = False

    async def start(self) -> None:
        """Recover interrupted executions, load schedules and start loops"""
        if self._started:
            return

        recovered = await self.executor.recover()
        synced = await self.scheduler.sync_from_repository()
        await self.scheduler.start()
        await self.collaboration.start()

        self._started = True
        logger.info(
            "runtime_started",
            service=self.settings.service_name,
            recovered_executions=len(recovered),
            schedules=len(synced),
        )

    async def stop(self) -> None:
        if not self._started:
            return

        await self.scheduler.stop()
        await self.collaboration.stop()
        await self.streams.shutdown()
        await self.executor.shutdown()
        await self.cache.close()

        self._started = False
        logger.info("runtime_stopped", service=self.settings.service_name)

    @property
    def is_running(self) -> bool:
        return self._started

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "executor": self.executor.get_metrics(),
            "scheduler": self.scheduler.get_metrics(),
            "collaboration": self.collaboration.get_metrics(),
            "streams": self.streams.get_metrics(),
            "events": self.events.get_metrics(),
        }


def create_runtime(
    settings: Optional[Settings] = None,
    configure_logging: bool = True,
    **overrides: Any,
) -> Runtime:
    """
    Build a runtime from settings.

    Args:
        settings: Settings to use; environment-derived settings otherwise
        configure_logging: Apply the settings' log level and format
        **overrides: Passed to Runtime (repositories, clock, sleep)
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(
            level=settings.log_level,
            format=settings.log_format,
            service_name=settings.service_name,
            environment=settings.environment,
        )

    return Runtime(
        settings,
        cache=overrides.pop("cache", None) or create_cache_backend(settings.cache),
        audit=overrides.pop("audit", None) or AuditLog(),
        **overrides,
    )
