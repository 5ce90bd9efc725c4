"""JSON-Schema subset validation of tool arguments."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

_logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    path: str
    message: str


@dataclass
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues


def json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_matches(actual: str, expected: str | list[str]) -> bool:
    if isinstance(expected, list):
        return any(_type_matches(actual, e) for e in expected)
    if actual == expected:
        return True
    return expected == "number" and actual == "integer"


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _validate(value: Any, schema: dict[str, Any], path: str, issues: list[ValidationIssue]) -> None:
    expected = schema.get("type")
    actual = json_type(value)
    if expected is not None:
        if expected == "integer" and isinstance(value, float) and value.is_integer():
            actual = "integer"
        if not _type_matches(actual, expected):
            issues.append(ValidationIssue(path, f"expected {expected}, got {actual}"))
            return

    if "enum" in schema and value not in schema["enum"]:
        options = ", ".join(str(o) for o in schema["enum"])
        issues.append(ValidationIssue(path, f"must be one of: {options}"))

    if actual == "string":
        if "minLength" in schema and len(value) < schema["minLength"]:
            issues.append(ValidationIssue(
                path, f"too short: at least {schema['minLength']} characters, got {len(value)}"))
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            issues.append(ValidationIssue(
                path, f"too long: at most {schema['maxLength']} characters, got {len(value)}"))
        if "pattern" in schema and not re.search(schema["pattern"], value):
            issues.append(ValidationIssue(path, f"does not match pattern {schema['pattern']}"))

    elif actual in ("integer", "number"):
        if "minimum" in schema and value < schema["minimum"]:
            issues.append(ValidationIssue(path, f"must be >= {schema['minimum']}, got {value}"))
        if "maximum" in schema and value > schema["maximum"]:
            issues.append(ValidationIssue(path, f"must be <= {schema['maximum']}, got {value}"))

    elif actual == "array":
        if "minItems" in schema and len(value) < schema["minItems"]:
            issues.append(ValidationIssue(
                path, f"too few items: at least {schema['minItems']}, got {len(value)}"))
        if "maxItems" in schema and len(value) > schema["maxItems"]:
            issues.append(ValidationIssue(
                path, f"too many items: at most {schema['maxItems']}, got {len(value)}"))
        items = schema.get("items")
        if isinstance(items, dict):
            for i, item in enumerate(value):
                _validate(item, items, f"{path}[{i}]", issues)

    elif actual == "object":
        props = schema.get("properties") or {}
        for req in schema.get("required") or []:
            if req not in value:
                issues.append(ValidationIssue(_join(path, req), f"missing required field: {req}"))
        for key, item in value.items():
            sub = props.get(key)
            if sub is None:
                if schema.get("additionalProperties") is False:
                    issues.append(ValidationIssue(_join(path, key), f"unexpected property: {key}"))
                continue
            _validate(item, sub, _join(path, key), issues)


def validate_arguments(arguments: Any, schema: dict[str, Any] | None) -> ValidationResult:
    """Validate *arguments* against *schema*; a missing schema always passes.

    Internal validator failures (e.g. a bad ``pattern``) are reported as a
    validation issue rather than raised.
    """
    result = ValidationResult()
    if not schema or not isinstance(schema, dict):
        return result
    try:
        _validate(arguments, schema, "", result.issues)
    except Exception as e:
        _logger.exception("Argument validator failed")
        result.issues.append(ValidationIssue("", f"validator error: {e}"))
    return result


def format_validation_errors(issues: list[ValidationIssue]) -> str:
    if not issues:
        return "Arguments are valid"
    lines = [
        f'  - field "{i.path}": {i.message}' if i.path else f"  - {i.message}"
        for i in issues
    ]
    return "Argument validation failed:\n" + "\n".join(lines)
