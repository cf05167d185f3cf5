"""
Schema Documents
================

JSON-Schema-like validation, inference and merging.

Supported keywords: ``type`` (name or list of names), ``properties``,
``required``, ``additionalProperties`` (bool), ``items``, ``enum``,
``const``, ``minimum``, ``maximum``, ``minLength``, ``maxLength``,
``minItems``, ``maxItems``, ``pattern``, ``nullable``.

Type names: object, array, string, number, integer, boolean, null, any.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from exprsn_core.core.errors import ValidationError
from exprsn_core.exprlang.operators import is_number, type_name

SCHEMA_TYPES = ("object", "array", "string", "number", "integer", "boolean", "null", "any")

_TYPE_ORDER = {name: i for i, name in enumerate(SCHEMA_TYPES)}


@dataclass
class SchemaValidationResult:
    """Outcome of validate()"""

    valid: bool
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}

    def raise_for_errors(self, message: str = "Schema validation failed") -> None:
        if not self.valid:
            raise ValidationError(message, errors=self.errors)


# =============================================================================
# VALIDATION
# =============================================================================


def _matches_type(value: Any, expected: str) -> bool:
    if expected == "any":
        return True
    if expected == "null":
        return value is None
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return is_number(value) and float(value).is_integer()
    if expected == "number":
        return is_number(value)
    if expected == "string":
        return isinstance(value, str)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return False


def _types_of(schema: Dict[str, Any]) -> List[str]:
    declared = schema.get("type")
    if declared is None:
        return []
    types = list(declared) if isinstance(declared, list) else [declared]
    if schema.get("nullable") and "null" not in types:
        types.append("null")
    return types


def validate(data: Any, schema: Dict[str, Any]) -> SchemaValidationResult:
    """Check that data conforms to a schema document"""
    errors: List[Dict[str, str]] = []
    _validate_node(data, schema or {}, "$", errors)
    return SchemaValidationResult(valid=not errors, errors=errors)


def _validate_node(value: Any, schema: Dict[str, Any], path: str, errors: List[Dict[str, str]]) -> None:
    if not isinstance(schema, dict):
        errors.append({"path": path, "message": "schema node must be an object"})
        return

    types = _types_of(schema)
    if types and not any(_matches_type(value, t) for t in types):
        errors.append({
            "path": path,
            "message": f"expected {' or '.join(types)}, got {type_name(value)}",
        })
        return

    if "const" in schema and value != schema["const"]:
        errors.append({"path": path, "message": f"must equal {schema['const']!r}"})

    if "enum" in schema and value not in schema["enum"]:
        errors.append({"path": path, "message": f"must be one of {schema['enum']!r}"})

    if value is None:
        return

    if is_number(value):
        if "minimum" in schema and value < schema["minimum"]:
            errors.append({"path": path, "message": f"must be >= {schema['minimum']}"})
        if "maximum" in schema and value > schema["maximum"]:
            errors.append({"path": path, "message": f"must be <= {schema['maximum']}"})

    if isinstance(value, str):
        if "minLength" in schema and len(value) < schema["minLength"]:
            errors.append({"path": path, "message": f"length must be >= {schema['minLength']}"})
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            errors.append({"path": path, "message": f"length must be <= {schema['maxLength']}"})
        if "pattern" in schema:
            try:
                if re.search(schema["pattern"], value) is None:
                    errors.append({"path": path, "message": f"must match pattern {schema['pattern']!r}"})
            except re.error as e:
                errors.append({"path": path, "message": f"invalid pattern: {e}"})

    if isinstance(value, list):
        if "minItems" in schema and len(value) < schema["minItems"]:
            errors.append({"path": path, "message": f"must have >= {schema['minItems']} items"})
        if "maxItems" in schema and len(value) > schema["maxItems"]:
            errors.append({"path": path, "message": f"must have <= {schema['maxItems']} items"})
        items = schema.get("items")
        if isinstance(items, dict):
            for i, item in enumerate(value):
                _validate_node(item, items, f"{path}[{i}]", errors)

    if isinstance(value, dict):
        properties = schema.get("properties", {})
        for name in schema.get("required", []):
            if name not in value:
                errors.append({"path": f"{path}.{name}", "message": "is required"})
        for name, item in value.items():
            if name in properties:
                _validate_node(item, properties[name], f"{path}.{name}", errors)
            elif schema.get("additionalProperties") is False:
                errors.append({"path": f"{path}.{name}", "message": "is not allowed"})


# =============================================================================
# INFERENCE
# =============================================================================


def infer_schema(sample: Any) -> Dict[str, Any]:
    """
    Schema document that validates the sample.

    Arrays get the tightest common item shape; object fields that are null
    in the sample are optional.
    """
    if sample is None:
        return {"type": "null"}
    if isinstance(sample, bool):
        return {"type": "boolean"}
    if is_number(sample):
        if isinstance(sample, int) or float(sample).is_integer():
            return {"type": "integer"}
        return {"type": "number"}
    if isinstance(sample, str):
        return {"type": "string"}
    if isinstance(sample, list):
        schema: Dict[str, Any] = {"type": "array"}
        if sample:
            schema["items"] = merge_schemas(*(infer_schema(item) for item in sample))
        return schema
    if isinstance(sample, dict):
        return {
            "type": "object",
            "properties": {key: infer_schema(value) for key, value in sample.items()},
            "required": sorted(key for key, value in sample.items() if value is not None),
        }
    return {"type": "any"}


# =============================================================================
# MERGING
# =============================================================================


def _normalise_types(types: Iterable[str]) -> Any:
    unique: Set[str] = set(types)
    if "any" in unique:
        return "any"
    if "number" in unique:
        unique.discard("integer")
    ordered = sorted(unique, key=lambda t: _TYPE_ORDER.get(t, len(_TYPE_ORDER)))
    if len(ordered) == 1:
        return ordered[0]
    return ordered


def _merge_pair(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    types_a = _types_of(a) or ["any"]
    types_b = _types_of(b) or ["any"]
    merged: Dict[str, Any] = {"type": _normalise_types(types_a + types_b)}

    if "properties" in a or "properties" in b:
        props_a = a.get("properties", {})
        props_b = b.get("properties", {})
        properties: Dict[str, Any] = {}
        for name in list(props_a) + [n for n in props_b if n not in props_a]:
            if name in props_a and name in props_b:
                properties[name] = _merge_pair(props_a[name], props_b[name])
            else:
                properties[name] = dict(props_a.get(name) or props_b[name])
        merged["properties"] = properties

        required_a = set(a.get("required", [])) if "object" in types_a else None
        required_b = set(b.get("required", [])) if "object" in types_b else None
        if required_a is not None and required_b is not None:
            required = required_a & required_b
        else:
            required = required_a if required_a is not None else (required_b or set())
        merged["required"] = sorted(required)

    if "items" in a or "items" in b:
        if "items" in a and "items" in b:
            merged["items"] = _merge_pair(a["items"], b["items"])
        else:
            merged["items"] = dict(a.get("items") or b["items"])

    return merged


def merge_schemas(*schemas: Dict[str, Any]) -> Dict[str, Any]:
    """Union of field sets; field types become unions where they disagree"""
    if not schemas:
        return {"type": "any"}
    merged = dict(schemas[0])
    for schema in schemas[1:]:
        merged = _merge_pair(merged, schema)
    return merged
