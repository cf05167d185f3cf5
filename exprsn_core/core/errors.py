"""
Error Taxonomy
==============

Stable error kinds shared by every component. Messages are human-facing;
kinds are the machine-readable contract.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================================
# ERROR KINDS
# =============================================================================


class EvalErrorKind(str, Enum):
    """Expression evaluation failure kinds"""

    TYPE_MISMATCH = "TypeMismatch"
    ARITHMETIC_DOMAIN = "ArithmeticDomain"
    UNBOUND_VARIABLE = "UnboundVariable"
    PATTERN_ERROR = "PatternError"
    DEPTH_EXCEEDED = "DepthExceeded"


class StepErrorKind(str, Enum):
    """Step execution failure kinds"""

    INPUT_RESOLUTION = "InputResolution"
    TIMEOUT = "Timeout"
    BODY = "Body"
    CANCELLED = "Cancelled"


class ExecutionErrorKind(str, Enum):
    """Executor-level failure kinds"""

    NO_HANDLER = "NoHandler"
    BROKEN_GRAPH = "BrokenGraph"


# =============================================================================
# EXCEPTIONS
# =============================================================================


class ExprsnError(Exception):
    """Base exception for all platform errors."""

    label = "Error"

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.label
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API surfaces (never includes a traceback)."""
        return {
            "error": self.label,
            "kind": self.kind,
            "message": self.message,
        }

    def __str__(self) -> str:
        if self.kind and self.kind != self.label:
            return f"{self.label}({self.kind}): {self.message}"
        return f"{self.label}: {self.message}"


class ValidationError(ExprsnError):
    """Static validation of definitions, schemas, imports or parameters failed."""

    label = "ValidationError"

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class EvalError(ExprsnError):
    """ExprLang evaluation failure."""

    label = "EvalError"

    def __init__(self, kind: EvalErrorKind, message: str, **details: Any):
        super().__init__(message, kind=kind.value, details=details)


class StepError(ExprsnError):
    """A single step attempt failed."""

    label = "StepError"

    def __init__(
        self,
        kind: StepErrorKind,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ):
        super().__init__(message, kind=kind.value, details=details)
        self.step_id = step_id

    def to_payload(self) -> Dict[str, Any]:
        """Payload bound as ``$error`` when routing to an error handler."""
        return {
            "kind": self.kind,
            "message": self.message,
            "step_id": self.step_id,
            **self.details,
        }


class ExecutionError(ExprsnError):
    """The executor could not continue an execution."""

    label = "ExecutionError"

    def __init__(self, kind: ExecutionErrorKind, message: str, **details: Any):
        super().__init__(message, kind=kind.value, details=details)


class DecisionAmbiguous(ExprsnError):
    """Hit policy matched more rules than it permits."""

    label = "DecisionAmbiguous"

    def __init__(self, message: str, table_id: str, rule_ids: List[str]):
        super().__init__(message, details={"table_id": table_id, "rule_ids": rule_ids})
        self.table_id = table_id
        self.rule_ids = rule_ids


class ConflictError(ExprsnError):
    """Import conflict without a resolution strategy."""

    label = "ConflictError"

    def __init__(self, message: str, existing_id: Optional[str] = None):
        super().__init__(message, details={"existing_id": existing_id})
        self.existing_id = existing_id


class CycleError(ExprsnError):
    """Parameter dependency cycle detected."""

    label = "CycleError"

    def __init__(self, message: str, cycle: Optional[List[str]] = None):
        super().__init__(message, details={"cycle": cycle or []})
        self.cycle = cycle or []


class NotFound(ExprsnError):
    """Referenced entity does not exist."""

    label = "NotFound"


class PermissionDenied(ExprsnError):
    """Caller is not allowed to perform the operation."""

    label = "PermissionDenied"


class RateLimited(ExprsnError):
    """Caller exceeded a rate limit."""

    label = "RateLimited"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after


class ProviderUnavailable(ExprsnError):
    """An external provider could not be reached after retries."""

    label = "ProviderUnavailable"


def error_kind(error: BaseException) -> str:
    """Originating kind label of any exception, for audit records."""
    if isinstance(error, ExprsnError):
        return error.kind
    return type(error).__name__
