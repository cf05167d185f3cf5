"""
Core Infrastructure
===================

Shared building blocks: error taxonomy, settings, structured logging,
event subscriptions and TTL caches.

Author: Builder Engine Team
Version: 2.0.0
"""

from exprsn_core.core.cache import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    create_cache_backend,
)
from exprsn_core.core.config import Settings, get_settings
from exprsn_core.core.errors import (
    ConflictError,
    CycleError,
    DecisionAmbiguous,
    EvalError,
    EvalErrorKind,
    ExecutionError,
    ExecutionErrorKind,
    ExprsnError,
    NotFound,
    PermissionDenied,
    ProviderUnavailable,
    RateLimited,
    StepError,
    StepErrorKind,
    ValidationError,
)
from exprsn_core.core.events import Event, EventRegistry
from exprsn_core.core.logging import LogContext, setup_logging

__all__ = [
    # Cache
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "create_cache_backend",
    # Config
    "Settings",
    "get_settings",
    # Errors
    "ConflictError",
    "CycleError",
    "DecisionAmbiguous",
    "EvalError",
    "EvalErrorKind",
    "ExecutionError",
    "ExecutionErrorKind",
    "ExprsnError",
    "NotFound",
    "PermissionDenied",
    "ProviderUnavailable",
    "RateLimited",
    "StepError",
    "StepErrorKind",
    "ValidationError",
    # Events
    "Event",
    "EventRegistry",
    # Logging
    "LogContext",
    "setup_logging",
]
