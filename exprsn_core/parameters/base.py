"""
Parameter Models
================

Typed, scoped parameters: literal (text/number/date/datetime/boolean),
list-backed, query-backed and calculated.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

PARAMETER_NAME_RE = re.compile(r"^[A-Za-z_][\w-]*$")

QueryExecutor = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Any]]


# =============================================================================
# ENUMS
# =============================================================================


class ParameterType(str, Enum):
    """Parameter value types"""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    LIST = "list"
    QUERY = "query"
    CALCULATED = "calculated"


class ParameterScope(str, Enum):
    """Visibility scopes, most general first"""

    GLOBAL = "global"
    WORKSPACE = "workspace"
    REPORT = "report"
    USER = "user"
    SESSION = "session"


SCOPE_SPECIFICITY = {scope: i for i, scope in enumerate(ParameterScope)}


# =============================================================================
# MODELS
# =============================================================================


class ParameterValidation(BaseModel):
    """Value validation rules"""

    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    custom: Any = None  # ExprLang predicate over $value


class Parameter(BaseModel):
    """A named, typed value"""

    id: str = Field(default_factory=lambda: f"param_{uuid4().hex[:12]}")
    name: str
    label: Optional[str] = None
    description: str = ""
    type: ParameterType = ParameterType.TEXT
    scope: ParameterScope = ParameterScope.GLOBAL
    scope_id: Optional[str] = None

    # Values
    default_value: Any = None
    current_value: Any = None
    allowed_values: Optional[List[Any]] = None
    required: bool = False

    # Type-specific bodies
    list_values: List[Any] = Field(default_factory=list)
    allow_multiple: bool = False
    query: Optional[Dict[str, Any]] = None
    expression: Any = None
    dependencies: List[str] = Field(default_factory=list)

    validation: ParameterValidation = Field(default_factory=ParameterValidation)

    # Cache policy
    store_in_cache: bool = True
    cache_ttl_s: int = Field(default=3600, ge=0)

    # History policy
    store_history: bool = False
    history_limit: int = Field(default=10, ge=1)

    # Organisation
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    order: int = 0

    # Bookkeeping
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_error: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not PARAMETER_NAME_RE.match(value or ""):
            raise ValueError("name must start with a letter or underscore and contain only word characters or '-'")
        return value

    @property
    def is_calculated(self) -> bool:
        return self.type == ParameterType.CALCULATED

    @property
    def is_query(self) -> bool:
        return self.type == ParameterType.QUERY

    @property
    def display_label(self) -> str:
        return self.label or self.name


@dataclass
class ParameterHistoryEntry:
    """One recorded value change"""

    parameter_id: str
    value: Any
    previous_value: Any
    actor: Optional[str]
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parameter_id": self.parameter_id,
            "value": self.value,
            "previous_value": self.previous_value,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }
