"""
Workflow Validator.

Static checks applied on create, update and import:
- Exactly one entry step; every referenced step exists
- Cycles only through looping step types (wait, loop)
- Gateway routes do not overlap between conditions and next_steps
- ExprLang in inputs, conditions and variables is well formed and only
  references declared variables or outputs of upstream steps
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from exprsn_core.core.errors import ValidationError
from exprsn_core.exprlang import ExprEngine
from exprsn_core.workflow.models import LOOPING_STEP_TYPES, Step, Workflow

logger = structlog.get_logger(__name__)

# Context roots the executor always binds
BUILTIN_ROOTS = {"steps", "input", "error", "execution"}


@dataclass
class ValidationIssue:
    """A problem found in a workflow definition."""

    severity: str  # error, warning
    message: str
    step_id: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "message": self.message,
            "step_id": self.step_id,
            "path": self.path,
        }


@dataclass
class ValidationResult:
    """Result of workflow validation."""

    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    checked_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def raise_for_errors(self, subject: str = "workflow") -> None:
        if self.errors:
            raise ValidationError(
                f"Invalid {subject}: {self.errors[0].message}",
                errors=[
                    {"path": issue.path or issue.step_id or "$", "message": issue.message}
                    for issue in self.errors
                ],
            )


class WorkflowValidator:
    """
    Validates workflow graph structure and expressions.

    Usage:
        result = WorkflowValidator().validate(workflow)
        result.raise_for_errors()
    """

    def __init__(self, engine: Optional[ExprEngine] = None, max_steps: Optional[int] = None):
        self._engine = engine or ExprEngine()
        self._max_steps = max_steps

    def validate(self, workflow: Workflow) -> ValidationResult:
        issues: List[ValidationIssue] = []

        issues.extend(self._validate_structure(workflow))
        if not any(i.severity == "error" for i in issues) and workflow.steps:
            issues.extend(self._validate_graph(workflow))
            issues.extend(self._validate_gateways(workflow))
            issues.extend(self._validate_expressions(workflow))

        return ValidationResult(
            valid=all(i.severity != "error" for i in issues),
            issues=issues,
        )

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def _validate_structure(self, workflow: Workflow) -> List[ValidationIssue]:
        issues = []

        if not workflow.steps:
            issues.append(ValidationIssue("warning", "Workflow has no steps"))
            return issues

        if self._max_steps is not None and len(workflow.steps) > self._max_steps:
            issues.append(ValidationIssue("warning", f"Workflow has more than {self._max_steps} steps"))

        seen: Set[str] = set()
        for step in workflow.steps:
            if step.step_id in seen:
                issues.append(
                    ValidationIssue("error", f"Duplicate step ID: {step.step_id}", step_id=step.step_id)
                )
            seen.add(step.step_id)

        for step in workflow.steps:
            for target in step.targets():
                if target not in seen:
                    issues.append(
                        ValidationIssue(
                            "error",
                            f"Step '{step.step_id}' references unknown step '{target}'",
                            step_id=step.step_id,
                            path=f"steps.{step.step_id}",
                        )
                    )
            if step.error_handler == step.step_id:
                issues.append(
                    ValidationIssue("error", "A step cannot be its own error handler", step_id=step.step_id)
                )

        return issues

    # -------------------------------------------------------------------------
    # Graph
    # -------------------------------------------------------------------------

    def _validate_graph(self, workflow: Workflow) -> List[ValidationIssue]:
        issues = []
        steps = workflow.step_map()

        entries = entry_steps(workflow)
        if len(entries) != 1:
            issues.append(
                ValidationIssue(
                    "error",
                    f"Workflow must have exactly one entry step, found {len(entries)}"
                    + (f": {', '.join(entries)}" if entries else ""),
                )
            )

        for component in _strongly_connected(steps):
            cyclic = len(component) > 1 or component[0] in steps[component[0]].targets()
            if not cyclic:
                continue
            if not any(steps[s].step_type in LOOPING_STEP_TYPES for s in component):
                issues.append(
                    ValidationIssue(
                        "error",
                        f"Cycle through steps {', '.join(sorted(component))} has no wait or loop step",
                        step_id=sorted(component)[0],
                    )
                )

        return issues

    def _validate_gateways(self, workflow: Workflow) -> List[ValidationIssue]:
        issues = []
        for step in workflow.steps:
            if not step.is_gateway:
                continue
            routed = {c.next for c in step.conditions}
            overlap = routed & set(step.next_steps)
            if overlap:
                issues.append(
                    ValidationIssue(
                        "error",
                        f"Gateway '{step.step_id}' routes to {', '.join(sorted(overlap))} both conditionally and by default",
                        step_id=step.step_id,
                    )
                )
            if not step.conditions and not step.next_steps:
                issues.append(
                    ValidationIssue("error", f"Gateway '{step.step_id}' has no outgoing routes", step_id=step.step_id)
                )
            elif step.conditions and not step.next_steps:
                issues.append(
                    ValidationIssue(
                        "warning",
                        f"Gateway '{step.step_id}' has no default route",
                        step_id=step.step_id,
                    )
                )
            if len(step.next_steps) > 1:
                issues.append(
                    ValidationIssue(
                        "error",
                        f"Gateway '{step.step_id}' may declare at most one default route",
                        step_id=step.step_id,
                    )
                )
        return issues

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _validate_expressions(self, workflow: Workflow) -> List[ValidationIssue]:
        issues = []
        steps = workflow.step_map()
        declared = set(workflow.variables) | set(workflow.exprlang_schema.get("properties", {}))
        for step in workflow.steps:
            declared.update(target for target in step.outputs.values() if target)

        for name, value in workflow.variables.items():
            issues.extend(
                self._check_expression(value, f"variables.{name}", None, declared | BUILTIN_ROOTS, set())
            )

        for step in workflow.steps:
            upstream = ancestors(steps, step.step_id)
            for name, value in step.inputs.items():
                issues.extend(
                    self._check_expression(value, f"steps.{step.step_id}.inputs.{name}", step, declared, upstream)
                )
            for i, condition in enumerate(step.conditions):
                path = f"steps.{step.step_id}.conditions[{i}]"
                try:
                    expression = condition.expression()
                except ValidationError as e:
                    issues.append(ValidationIssue("error", e.message, step_id=step.step_id, path=path))
                    continue
                issues.extend(self._check_expression(expression, path, step, declared, upstream | {step.step_id}))

        return issues

    def _check_expression(
        self,
        expression: Any,
        path: str,
        step: Optional[Step],
        declared: Set[str],
        upstream: Set[str],
    ) -> List[ValidationIssue]:
        step_id = step.step_id if step else None
        issues = [
            ValidationIssue("error", problem["message"], step_id=step_id, path=f"{path}{problem['path'][1:]}")
            for problem in self._engine.validate_expression(expression)
        ]
        if issues:
            return issues

        for ref in sorted(self._engine.references(expression)):
            root, _, rest = ref.partition(".")
            if root == "steps":
                source = rest.split(".")[0] if rest else ""
                if source and source not in upstream:
                    issues.append(
                        ValidationIssue(
                            "error",
                            f"${ref} refers to step '{source}' which does not run before this point",
                            step_id=step_id,
                            path=path,
                        )
                    )
            elif root not in declared and root not in BUILTIN_ROOTS:
                issues.append(
                    ValidationIssue("error", f"${ref} is not a declared variable", step_id=step_id, path=path)
                )
        return issues


# =============================================================================
# GRAPH HELPERS
# =============================================================================


def entry_steps(workflow: Workflow) -> List[str]:
    """Steps with no incoming edges, in definition order"""
    targets: Set[str] = set()
    for step in workflow.steps:
        targets.update(step.targets())
    return [step.step_id for step in workflow.steps if step.step_id not in targets]


def ancestors(steps: Dict[str, Step], step_id: str) -> Set[str]:
    """Steps from which ``step_id`` is reachable"""
    incoming: Dict[str, Set[str]] = {sid: set() for sid in steps}
    for sid, step in steps.items():
        for target in step.targets():
            if target in incoming:
                incoming[target].add(sid)

    found: Set[str] = set()
    frontier = list(incoming.get(step_id, ()))
    while frontier:
        current = frontier.pop()
        if current in found:
            continue
        found.add(current)
        frontier.extend(incoming.get(current, ()))
    return found


def _strongly_connected(steps: Dict[str, Step]) -> Iterable[List[str]]:
    """Tarjan's algorithm over the step graph"""
    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = [0]

    def visit(node: str) -> None:
        index_of[node] = lowlink[node] = counter[0]
        counter[0] += 1
        stack.append(node)
        on_stack.add(node)

        for target in steps[node].targets():
            if target not in steps:
                continue
            if target not in index_of:
                visit(target)
                lowlink[node] = min(lowlink[node], lowlink[target])
            elif target in on_stack:
                lowlink[node] = min(lowlink[node], index_of[target])

        if lowlink[node] == index_of[node]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node:
                    break
            components.append(component)

    for node in steps:
        if node not in index_of:
            visit(node)
    return components
