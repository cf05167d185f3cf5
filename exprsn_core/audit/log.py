"""
Audit Log
=========

Append-only record of lifecycle events: workflow create/update/import/export,
execution state transitions, parameter mutations, decision evaluations,
schedule and collaboration activity.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

AuditSink = Callable[["AuditRecord"], None]

SYSTEM_ACTOR = "system"


class AuditEventType(str, Enum):
    """Lifecycle events that produce audit records"""

    # Workflows
    WORKFLOW_CREATE = "workflow_create"
    WORKFLOW_UPDATE = "workflow_update"
    WORKFLOW_DELETE = "workflow_delete"
    WORKFLOW_STATUS = "workflow_status"
    WORKFLOW_IMPORT = "workflow_import"
    WORKFLOW_EXPORT = "workflow_export"

    # Executions
    EXECUTION_TRANSITION = "execution_transition"
    STEP_ATTEMPT = "step_attempt"

    # Parameters
    PARAMETER_CREATE = "parameter_create"
    PARAMETER_UPDATE = "parameter_update"
    PARAMETER_DELETE = "parameter_delete"
    PARAMETER_VALUE_SET = "parameter_value_set"

    # Decisions
    DECISION_TABLE_REGISTER = "decision_table_register"
    DECISION_TABLE_DELETE = "decision_table_delete"
    DECISION_EVALUATE = "decision_evaluate"

    # Scheduling
    SCHEDULE_CREATE = "schedule_create"
    SCHEDULE_UPDATE = "schedule_update"
    SCHEDULE_DELETE = "schedule_delete"
    SCHEDULE_FIRE = "schedule_fire"


@dataclass(frozen=True)
class AuditRecord:
    """Immutable audit entry"""

    id: str
    event_type: str
    actor: str
    timestamp: datetime
    target_ids: Tuple[str, ...] = ()
    success: bool = True
    error_kind: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "target_ids": list(self.target_ids),
            "success": self.success,
            "error_kind": self.error_kind,
            "metadata": dict(self.metadata),
        }


class AuditLog:
    """
    Append-only audit log.

    Records can be queried but never modified or removed. Sinks receive
    each record after it is appended; a failing sink is logged and skipped.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._records: List[AuditRecord] = []
        self._sinks: List[AuditSink] = []
        self._counter = itertools.count(1)
        self._clock = clock
        self._logger = structlog.get_logger("audit_log")

    def add_sink(self, sink: AuditSink) -> None:
        """Register a callable notified for every new record"""
        self._sinks.append(sink)

    def record(
        self,
        event_type: Any,
        actor: Optional[str] = None,
        target_ids: Iterable[Optional[str]] = (),
        success: bool = True,
        error_kind: Optional[str] = None,
        **metadata: Any,
    ) -> AuditRecord:
        """Append a record"""
        entry = AuditRecord(
            id=f"aud_{next(self._counter):08d}",
            event_type=event_type.value if isinstance(event_type, Enum) else str(event_type),
            actor=actor or SYSTEM_ACTOR,
            timestamp=self._clock(),
            target_ids=tuple(t for t in target_ids if t),
            success=success,
            error_kind=error_kind,
            metadata=MappingProxyType(dict(metadata)),
        )
        self._records.append(entry)

        self._logger.debug(
            "audit_recorded",
            event_type=entry.event_type,
            actor=entry.actor,
            success=success,
            error_kind=error_kind,
        )

        for sink in self._sinks:
            try:
                sink(entry)
            except Exception as e:
                self._logger.error("audit_sink_failed", error=str(e), exc_info=True)

        return entry

    def query(
        self,
        event_type: Any = None,
        actor: Optional[str] = None,
        target_id: Optional[str] = None,
        since: Optional[datetime] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        """Records matching every given filter, oldest first"""
        wanted_type = event_type.value if isinstance(event_type, Enum) else event_type
        results = []
        for entry in self._records:
            if wanted_type is not None and entry.event_type != wanted_type:
                continue
            if actor is not None and entry.actor != actor:
                continue
            if target_id is not None and target_id not in entry.target_ids:
                continue
            if since is not None and entry.timestamp < since:
                continue
            if success is not None and entry.success != success:
                continue
            results.append(entry)

        if limit is not None:
            results = results[-limit:]
        return results

    def count(self, event_type: Any = None) -> int:
        return len(self.query(event_type=event_type))

    def __len__(self) -> int:
        return len(self._records)
