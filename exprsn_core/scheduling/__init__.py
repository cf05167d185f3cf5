"""
Scheduling
==========

Cron expressions, presets and the workflow scheduler.

Author: Builder Engine Team
Version: 2.0.0
"""

from exprsn_core.scheduling.cron import (
    CronExpression,
    SchedulePresets,
    daily_at,
    describe,
    monthly_on,
    validate_cron,
    weekly_on,
)
from exprsn_core.scheduling.scheduler import ScheduleEntry, WorkflowScheduler

__all__ = [
    "CronExpression",
    "SchedulePresets",
    "ScheduleEntry",
    "WorkflowScheduler",
    "daily_at",
    "describe",
    "monthly_on",
    "validate_cron",
    "weekly_on",
]
