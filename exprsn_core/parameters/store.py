"""
Parameter Store
===============

Named, typed, scoped values with:
- Lazy evaluation of calculated parameters through ExprLang
- Query-backed parameters resolved through an injected query capability
- TTL caching (never served past expiry)
- Bounded value history
- Dependency DAG with cycle detection and transitive recomputation in
  topological order

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import copy
import json
import re
from collections import defaultdict, deque
from datetime import date, datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Set, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.cache import MISSING, CacheBackend, InMemoryCacheBackend
from exprsn_core.core.config import ParameterConfig
from exprsn_core.core.errors import (
    CycleError,
    EvalError,
    NotFound,
    ValidationError,
    error_kind,
)
from exprsn_core.exprlang import ExprEngine
from exprsn_core.exprlang.operators import is_number, is_numeric_string, to_number
from exprsn_core.parameters.base import (
    SCOPE_SPECIFICITY,
    Parameter,
    ParameterHistoryEntry,
    ParameterScope,
    ParameterType,
    QueryExecutor,
)

logger = structlog.get_logger(__name__)

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


class ParameterStore:
    """
    Parameter store.

    Usage:
        store = ParameterStore(audit=audit_log)
        p1 = await store.create_parameter({"name": "P1", "type": "number", "current_value": 10})
        p2 = await store.create_parameter({
            "name": "P2",
            "type": "calculated",
            "expression": {"operator": "multiply", "operands": ["$P1", 2]},
            "dependencies": [p1.id],
        })
        await store.get_value(p2.id)          # 20
        await store.set_value(p1.id, 25, actor="u1")
        await store.get_value(p2.id)          # 50
    """

    def __init__(
        self,
        engine: Optional[ExprEngine] = None,
        cache: Optional[CacheBackend] = None,
        audit: Optional[AuditLog] = None,
        query_executor: Optional[QueryExecutor] = None,
        config: Optional[ParameterConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._engine = engine or ExprEngine()
        self._cache = cache or InMemoryCacheBackend()
        self._audit = audit or AuditLog()
        self._query_executor = query_executor
        self._config = config or ParameterConfig()
        self._clock = clock

        self._parameters: Dict[str, Parameter] = {}
        self._dependents: Dict[str, Set[str]] = defaultdict(set)
        self._history: Dict[str, Deque[ParameterHistoryEntry]] = {}
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger("parameter_store")

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    async def create_parameter(
        self,
        definition: Union[Parameter, Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> Parameter:
        """Validate and register a parameter definition"""
        param = self._build(definition)
        if isinstance(definition, Mapping):
            if "cache_ttl_s" not in definition:
                param.cache_ttl_s = self._config.default_cache_ttl_s
            if "history_limit" not in definition:
                param.history_limit = self._config.default_history_limit
        param.created_by = param.created_by or actor

        async with self._lock:
            try:
                self._validate_definition(param)
                if param.type not in (ParameterType.CALCULATED, ParameterType.QUERY):
                    source = param.current_value if param.current_value is not None else param.default_value
                    param.current_value = self._coerce(param, source) if source is not None else None
            except (ValidationError, CycleError) as e:
                self._audit.record(
                    AuditEventType.PARAMETER_CREATE,
                    actor=actor,
                    target_ids=[param.id],
                    success=False,
                    error_kind=error_kind(e),
                    name=param.name,
                )
                raise

            self._parameters[param.id] = param
            self._link(param)
            if param.store_history:
                self._history[param.id] = deque(maxlen=param.history_limit)

            if param.is_calculated:
                await self._refresh_calculated(param)

        self._audit.record(
            AuditEventType.PARAMETER_CREATE,
            actor=actor,
            target_ids=[param.id],
            name=param.name,
            type=param.type.value,
        )
        self._logger.info("parameter_created", parameter_id=param.id, name=param.name, type=param.type.value)
        return param

    async def update_parameter(
        self,
        parameter_id: str,
        changes: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> Parameter:
        """Apply definition changes; re-validates and re-checks the DAG"""
        async with self._lock:
            existing = self._get(parameter_id)
            data = existing.model_dump()
            data.update({k: v for k, v in changes.items() if k not in ("id", "created_at")})
            data["updated_at"] = self._clock()
            updated = self._build(data)

            try:
                self._validate_definition(updated)
                if not updated.is_calculated and not updated.is_query and updated.current_value is not None:
                    updated.current_value = self._coerce(updated, updated.current_value)
            except (ValidationError, CycleError) as e:
                self._audit.record(
                    AuditEventType.PARAMETER_UPDATE,
                    actor=actor,
                    target_ids=[parameter_id],
                    success=False,
                    error_kind=error_kind(e),
                )
                raise

            self._unlink(existing)
            self._parameters[parameter_id] = updated
            self._link(updated)
            if updated.store_history:
                previous = self._history.get(parameter_id, ())
                self._history[parameter_id] = deque(previous, maxlen=updated.history_limit)
            else:
                self._history.pop(parameter_id, None)
            await self._invalidate(parameter_id)

            if updated.is_calculated:
                await self._refresh_calculated(updated)
            await self._recompute_dependents(parameter_id)

        self._audit.record(
            AuditEventType.PARAMETER_UPDATE,
            actor=actor,
            target_ids=[parameter_id],
            fields=sorted(changes),
        )
        return updated

    async def delete(self, parameter_id: str, actor: Optional[str] = None) -> None:
        """Remove a parameter; forbidden while others depend on it"""
        async with self._lock:
            param = self._get(parameter_id)
            dependents = sorted(self._dependents.get(parameter_id, ()))
            if dependents:
                names = [self._parameters[d].name for d in dependents]
                self._audit.record(
                    AuditEventType.PARAMETER_DELETE,
                    actor=actor,
                    target_ids=[parameter_id],
                    success=False,
                    error_kind="ValidationError",
                    dependents=names,
                )
                raise ValidationError(
                    f"Parameter '{param.name}' is used by: {', '.join(names)}",
                    errors=[{"path": "dependencies", "message": f"required by {name}"} for name in names],
                )

            self._unlink(param)
            self._dependents.pop(parameter_id, None)
            del self._parameters[parameter_id]
            self._history.pop(parameter_id, None)
            await self._invalidate(parameter_id)

        self._audit.record(AuditEventType.PARAMETER_DELETE, actor=actor, target_ids=[parameter_id], name=param.name)
        self._logger.info("parameter_deleted", parameter_id=parameter_id)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get_parameter(self, parameter_id: str) -> Parameter:
        return self._get(parameter_id).model_copy(deep=True)

    def get_parameter_by_name(
        self,
        name: str,
        scope: Optional[ParameterScope] = None,
        scope_id: Optional[str] = None,
    ) -> Parameter:
        """Most specific parameter with the name visible under the given scope"""
        candidates = [
            p for p in self._parameters.values()
            if p.name == name
            and (scope is None or p.scope == scope)
            and (scope_id is None or p.scope_id in (scope_id, None))
        ]
        if not candidates:
            raise NotFound(f"Parameter '{name}' not found")
        candidates.sort(key=lambda p: (SCOPE_SPECIFICITY[p.scope], p.scope_id is not None), reverse=True)
        return candidates[0].model_copy(deep=True)

    def list_parameters(
        self,
        scope: Optional[ParameterScope] = None,
        scope_id: Optional[str] = None,
        type: Optional[ParameterType] = None,
        tags: Optional[Iterable[str]] = None,
        category: Optional[str] = None,
    ) -> List[Parameter]:
        """Parameters matching the filters, sorted by order then name"""
        wanted_tags = set(tags or ())
        results = [
            p for p in self._parameters.values()
            if (scope is None or p.scope == scope)
            and (scope_id is None or p.scope_id == scope_id)
            and (type is None or p.type == type)
            and (category is None or p.category == category)
            and wanted_tags.issubset(p.tags)
        ]
        results.sort(key=lambda p: (p.order, p.name))
        return [p.model_copy(deep=True) for p in results]

    def get_history(self, parameter_id: str) -> List[Dict[str, Any]]:
        self._get(parameter_id)
        return [entry.to_dict() for entry in self._history.get(parameter_id, ())]

    def get_dependents(self, parameter_id: str) -> List[str]:
        self._get(parameter_id)
        return sorted(self._dependents.get(parameter_id, ()))

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    async def set_value(self, parameter_id: str, value: Any, actor: Optional[str] = None) -> Parameter:
        """
        Validate and write a value, then recompute dependents transitively.

        Raises:
            ValidationError: value violates type, allowed values or rules
        """
        async with self._lock:
            param = self._get(parameter_id)
            if param.is_calculated or param.is_query:
                raise ValidationError(f"Parameter '{param.name}' of type {param.type.value} cannot be set directly")

            try:
                coerced = self._coerce(param, value)
            except ValidationError as e:
                self._audit.record(
                    AuditEventType.PARAMETER_VALUE_SET,
                    actor=actor,
                    target_ids=[parameter_id],
                    success=False,
                    error_kind=error_kind(e),
                )
                raise

            previous = param.current_value
            param.current_value = coerced
            param.updated_at = self._clock()
            await self._invalidate(parameter_id)

            if param.store_history:
                history = self._history.setdefault(parameter_id, deque(maxlen=param.history_limit))
                history.append(
                    ParameterHistoryEntry(
                        parameter_id=parameter_id,
                        value=copy.deepcopy(coerced),
                        previous_value=previous,
                        actor=actor,
                        timestamp=self._clock(),
                    )
                )

            recomputed = await self._recompute_dependents(parameter_id)

        self._audit.record(
            AuditEventType.PARAMETER_VALUE_SET,
            actor=actor,
            target_ids=[parameter_id, *recomputed],
            name=param.name,
            recomputed=len(recomputed),
        )
        self._logger.info(
            "parameter_value_set",
            parameter_id=parameter_id,
            recomputed=len(recomputed),
        )
        return param.model_copy(deep=True)

    async def get_value(self, parameter_id: str, ctx: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Current value of a parameter.

        Calculated parameters resolve their dependencies first and evaluate
        their expression; query parameters run through the query capability
        at most once per cache TTL.
        """
        param = self._get(parameter_id)
        ctx = dict(ctx or {})

        if param.is_query:
            return await self._query_value(param, ctx)

        cacheable = param.store_in_cache and not ctx
        if cacheable:
            cached = await self._cache.get(self._value_key(parameter_id), MISSING)
            if cached is not MISSING:
                return cached

        if param.is_calculated:
            value = await self._evaluate(param, ctx, set())
            if not ctx:
                param.current_value = value
                param.last_error = None
        else:
            value = param.current_value if param.current_value is not None else param.default_value

        if cacheable:
            await self._cache.set(self._value_key(parameter_id), value, ttl_s=param.cache_ttl_s)
        return copy.deepcopy(value)

    async def resolve_values(
        self,
        parameter_ids: Optional[Iterable[str]] = None,
        ctx: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """name → value for the given parameters (all when omitted)"""
        ids = list(parameter_ids) if parameter_ids is not None else list(self._parameters)
        values: Dict[str, Any] = {}
        for parameter_id in ids:
            values[self._get(parameter_id).name] = await self.get_value(parameter_id, ctx)
        return values

    # -------------------------------------------------------------------------
    # Internals: validation
    # -------------------------------------------------------------------------

    def _build(self, definition: Union[Parameter, Mapping[str, Any]]) -> Parameter:
        if isinstance(definition, Parameter):
            return definition.model_copy(deep=True)
        try:
            return Parameter.model_validate(dict(definition))
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid parameter definition",
                errors=[
                    {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            ) from e

    def _validate_definition(self, param: Parameter) -> None:
        errors: List[Dict[str, str]] = []

        for other in self._parameters.values():
            if (
                other.id != param.id
                and other.name == param.name
                and other.scope == param.scope
                and other.scope_id == param.scope_id
            ):
                errors.append({"path": "name", "message": f"'{param.name}' already exists in scope {param.scope.value}"})

        if param.is_calculated:
            if param.expression is None:
                errors.append({"path": "expression", "message": "calculated parameters require an expression"})
            if not param.dependencies:
                errors.append({"path": "dependencies", "message": "calculated parameters require dependencies"})
        elif param.dependencies:
            errors.append({"path": "dependencies", "message": "only calculated parameters declare dependencies"})

        if param.is_query and not param.query:
            errors.append({"path": "query", "message": "query parameters require a query body"})

        if param.type == ParameterType.LIST and not param.list_values:
            errors.append({"path": "list_values", "message": "list parameters require list_values"})

        if param.validation.pattern:
            try:
                re.compile(param.validation.pattern)
            except re.error as e:
                errors.append({"path": "validation.pattern", "message": f"invalid pattern: {e}"})

        if param.validation.custom is not None:
            for problem in self._engine.validate_expression(param.validation.custom):
                errors.append({"path": f"validation.custom{problem['path'][1:]}", "message": problem["message"]})

        if errors:
            raise ValidationError(f"Invalid parameter '{param.name}'", errors=errors)

        if param.is_calculated:
            self._check_dependencies(param)

    def _check_dependencies(self, param: Parameter) -> None:
        if param.id in param.dependencies:
            raise CycleError(f"Parameter '{param.name}' depends on itself", cycle=[param.id, param.id])

        missing = [d for d in param.dependencies if d not in self._parameters]
        if missing:
            raise ValidationError(
                f"Unknown dependencies for '{param.name}'",
                errors=[{"path": "dependencies", "message": f"parameter {d} not found"} for d in missing],
            )

        cycle = self._find_cycle(param)
        if cycle:
            names = [self._parameters[c].name if c in self._parameters else param.name for c in cycle]
            raise CycleError(f"Dependency cycle: {' -> '.join(names)}", cycle=cycle)

        problems = self._engine.validate_expression(param.expression)
        if problems:
            raise ValidationError(f"Invalid expression for '{param.name}'", errors=problems)

        dependency_names = {self._parameters[d].name for d in param.dependencies}
        unknown = sorted(
            ref for ref in self._engine.references(param.expression)
            if ref.split(".")[0] not in dependency_names
        )
        if unknown:
            raise ValidationError(
                f"Expression for '{param.name}' references undeclared parameters",
                errors=[{"path": "expression", "message": f"${ref} is not a dependency"} for ref in unknown],
            )

    def _find_cycle(self, param: Parameter) -> Optional[List[str]]:
        """Path from param back to itself through dependencies, if any"""

        def deps_of(pid: str) -> List[str]:
            if pid == param.id:
                return param.dependencies
            node = self._parameters.get(pid)
            return node.dependencies if node else []

        stack: List[tuple] = [(d, [param.id, d]) for d in param.dependencies]
        seen: Set[str] = set()
        while stack:
            current, path = stack.pop()
            if current == param.id:
                return path
            if current in seen:
                continue
            seen.add(current)
            for dep in deps_of(current):
                stack.append((dep, path + [dep]))
        return None

    def _coerce(self, param: Parameter, value: Any) -> Any:
        """Validate a value against type, allowed values and rules"""
        if value is None:
            if param.required:
                raise ValidationError(f"Parameter '{param.name}' is required")
            return None

        if param.type == ParameterType.LIST:
            coerced = self._coerce_list(param, value)
        else:
            coerced = self._coerce_scalar(param, value)

        if param.allowed_values is not None:
            members = coerced if isinstance(coerced, list) and param.allow_multiple else [coerced]
            for member in members:
                if member not in param.allowed_values:
                    raise ValidationError(f"Value {member!r} is not allowed for '{param.name}'")

        rules = param.validation
        measure = len(coerced) if isinstance(coerced, str) else coerced
        if is_number(measure):
            if rules.min is not None and measure < rules.min:
                raise ValidationError(f"Value for '{param.name}' must be >= {rules.min}")
            if rules.max is not None and measure > rules.max:
                raise ValidationError(f"Value for '{param.name}' must be <= {rules.max}")

        if rules.pattern and isinstance(coerced, str) and not re.search(rules.pattern, coerced):
            raise ValidationError(f"Value for '{param.name}' must match {rules.pattern!r}")

        if rules.custom is not None:
            try:
                accepted = self._engine.evaluate(rules.custom, {"value": coerced, "name": param.name})
            except EvalError as e:
                raise ValidationError(f"Custom validation for '{param.name}' failed: {e.message}") from e
            if not accepted:
                raise ValidationError(f"Value for '{param.name}' failed custom validation")

        return coerced

    def _coerce_scalar(self, param: Parameter, value: Any) -> Any:
        kind = param.type
        if kind == ParameterType.TEXT:
            if not isinstance(value, str):
                raise ValidationError(f"Parameter '{param.name}' expects text")
            return value

        if kind == ParameterType.NUMBER:
            if is_number(value) or is_numeric_string(value):
                return to_number(value, "number")
            raise ValidationError(f"Parameter '{param.name}' expects a number")

        if kind == ParameterType.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in _TRUE_STRINGS | _FALSE_STRINGS:
                return value.lower() in _TRUE_STRINGS
            raise ValidationError(f"Parameter '{param.name}' expects a boolean")

        if kind == ParameterType.DATE:
            if isinstance(value, datetime):
                return value.date().isoformat()
            if isinstance(value, date):
                return value.isoformat()
            if isinstance(value, str):
                try:
                    return date.fromisoformat(value[:10]).isoformat()
                except ValueError as e:
                    raise ValidationError(f"Parameter '{param.name}' expects an ISO date") from e
            raise ValidationError(f"Parameter '{param.name}' expects a date")

        if kind == ParameterType.DATETIME:
            if isinstance(value, datetime):
                return value.isoformat()
            if isinstance(value, str):
                try:
                    return datetime.fromisoformat(value.replace("Z", "+00:00")).isoformat()
                except ValueError as e:
                    raise ValidationError(f"Parameter '{param.name}' expects an ISO datetime") from e
            raise ValidationError(f"Parameter '{param.name}' expects a datetime")

        return value

    def _coerce_list(self, param: Parameter, value: Any) -> Any:
        if param.allow_multiple:
            values = value if isinstance(value, list) else [value]
            for member in values:
                if member not in param.list_values:
                    raise ValidationError(f"Value {member!r} is not in the list for '{param.name}'")
            return list(values)
        if value not in param.list_values:
            raise ValidationError(f"Value {value!r} is not in the list for '{param.name}'")
        return value

    # -------------------------------------------------------------------------
    # Internals: graph and evaluation
    # -------------------------------------------------------------------------

    def _get(self, parameter_id: str) -> Parameter:
        param = self._parameters.get(parameter_id)
        if param is None:
            raise NotFound(f"Parameter {parameter_id} not found")
        return param

    def _link(self, param: Parameter) -> None:
        for dep in param.dependencies:
            self._dependents[dep].add(param.id)

    def _unlink(self, param: Parameter) -> None:
        for dep in param.dependencies:
            dependents = self._dependents.get(dep)
            if dependents:
                dependents.discard(param.id)
                if not dependents:
                    del self._dependents[dep]

    @staticmethod
    def _value_key(parameter_id: str) -> str:
        return f"parameter:{parameter_id}:value"

    @staticmethod
    def _query_prefix(parameter_id: str) -> str:
        return f"parameter:{parameter_id}:query:"

    async def _invalidate(self, parameter_id: str) -> None:
        await self._cache.delete(self._value_key(parameter_id))
        await self._cache.delete_prefix(self._query_prefix(parameter_id))

    async def _evaluate(self, param: Parameter, ctx: Dict[str, Any], visiting: Set[str]) -> Any:
        if param.id in visiting:
            raise CycleError(f"Dependency cycle at '{param.name}'", cycle=sorted(visiting | {param.id}))
        visiting = visiting | {param.id}

        scope = dict(ctx)
        for dep_id in param.dependencies:
            dep = self._get(dep_id)
            if dep.is_calculated and ctx:
                scope[dep.name] = await self._evaluate(dep, ctx, visiting)
            else:
                scope[dep.name] = await self.get_value(dep_id, ctx)
        return self._engine.evaluate(param.expression, scope)

    async def _refresh_calculated(self, param: Parameter) -> bool:
        """Re-evaluate a calculated parameter; True when its value changed"""
        previous = param.current_value
        try:
            value = await self._evaluate(param, {}, set())
            param.last_error = None
        except (EvalError, ValidationError) as e:
            value = None
            param.last_error = str(e)
            self._logger.warning(
                "parameter_evaluation_failed",
                parameter_id=param.id,
                kind=e.kind,
                error=e.message,
            )
        param.current_value = value
        param.updated_at = self._clock()
        if param.store_in_cache:
            await self._cache.set(self._value_key(param.id), value, ttl_s=param.cache_ttl_s)
        else:
            await self._cache.delete(self._value_key(param.id))
        return value != previous

    def _topological_dependents(self, source_id: str) -> List[str]:
        """Transitive dependents of source in topological order"""
        affected: Set[str] = set()
        frontier = list(self._dependents.get(source_id, ()))
        while frontier:
            current = frontier.pop()
            if current in affected:
                continue
            affected.add(current)
            frontier.extend(self._dependents.get(current, ()))

        indegree = {
            pid: sum(1 for d in self._parameters[pid].dependencies if d in affected)
            for pid in affected
        }
        ready = sorted(pid for pid, count in indegree.items() if count == 0)
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in sorted(self._dependents.get(current, ())):
                if dependent in indegree:
                    indegree[dependent] -= 1
                    if indegree[dependent] == 0:
                        ready.append(dependent)
        return order

    async def _recompute_dependents(self, source_id: str) -> List[str]:
        """Re-evaluate only dependents whose inputs actually changed"""
        changed: Set[str] = {source_id}
        recomputed: List[str] = []
        for pid in self._topological_dependents(source_id):
            param = self._parameters[pid]
            if not any(dep in changed for dep in param.dependencies):
                continue
            await self._cache.delete(self._value_key(pid))
            if await self._refresh_calculated(param):
                changed.add(pid)
            recomputed.append(pid)
        return recomputed

    async def _query_value(self, param: Parameter, ctx: Dict[str, Any]) -> Any:
        key = self._query_prefix(param.id) + json.dumps(ctx, sort_keys=True, default=str)
        cached = await self._cache.get(key, MISSING)
        if cached is not MISSING:
            return cached

        if self._query_executor is None:
            raise ValidationError(f"No query capability configured for '{param.name}'")

        query = copy.deepcopy(param.query or {})
        params = {**query.get("params", {}), **ctx}
        rows = await self._query_executor(query, params)

        value_field = query.get("value_field")
        if isinstance(rows, list) and value_field:
            value = [row.get(value_field) if isinstance(row, dict) else row for row in rows]
        else:
            value = rows

        param.current_value = value
        await self._cache.set(key, value, ttl_s=param.cache_ttl_s)
        self._logger.debug("parameter_query_executed", parameter_id=param.id)
        return copy.deepcopy(value)
