# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Validator - check data against an extended JSON Schema.

Walks schema and data in lock-step and stops at the first error.
Soft validation lets strings stand in for numbers and booleans when they
parse, which is how CLI-sourced parameters (always strings) get accepted.
"""

import dataclasses
import math
import re
from typing import Any, Dict, Optional

from frags.errors import SchemaValidationError
from frags.schemas.json_schema import Schema


def validate(data: Any, schema: Schema, soft: bool = False) -> None:
    """Validate ``data`` against ``schema``.

    Args:
        data: Decoded JSON-like value (dicts, lists, scalars, or records)
        schema: Schema to check against
        soft: Accept parseable strings in numeric/boolean positions

    Raises:
        SchemaValidationError: On the first mismatch, with a dotted path
    """
    _Walker(soft).check(data, schema, "")


def is_valid(data: Any, schema: Schema, soft: bool = False) -> bool:
    try:
        validate(data, schema, soft=soft)
    except SchemaValidationError:
        return False
    return True


def _as_mapping(value: Any) -> Optional[Dict[str, Any]]:
    """Return a field mapping for dicts and records, None otherwise."""
    if isinstance(value, dict):
        return value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True)
    return None


def _infer_type(value: Any) -> str:
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
    if _as_mapping(value) is not None:
        return "object"
    return ""


class _Walker:
    def __init__(self, soft: bool):
        self.soft = soft

    def check(self, value: Any, schema: Schema, path: str) -> None:
        if value is None:
            if schema.nullable:
                return
            raise SchemaValidationError(path, "value is null but schema is not nullable")

        if schema.any_of:
            last: Optional[SchemaValidationError] = None
            for branch in schema.any_of:
                try:
                    self.check(value, branch, path)
                    return
                except SchemaValidationError as e:
                    last = e
            raise SchemaValidationError(path, f"no anyOf branch matched ({last.reason})")

        schema_type = schema.type or _infer_type(value)
        if schema_type == "object":
            self._object(value, schema, path)
        elif schema_type == "array":
            self._array(value, schema, path)
        elif schema_type == "string":
            self._string(value, schema, path)
        elif schema_type in ("number", "integer"):
            value = self._number(value, schema, path, integer=schema_type == "integer")
        elif schema_type == "boolean":
            value = self._boolean(value, path)

        if schema.enum is not None and schema_type != "string":
            if value not in schema.enum:
                raise SchemaValidationError(path, f"value {value!r} not in enum {schema.enum}")

    def _object(self, value: Any, schema: Schema, path: str) -> None:
        mapping = _as_mapping(value)
        if mapping is None:
            raise SchemaValidationError(path, f"expected object, got {type(value).__name__}")
        if schema.min_properties is not None and len(mapping) < schema.min_properties:
            raise SchemaValidationError(
                path, f"expected at least {schema.min_properties} properties, got {len(mapping)}"
            )
        if schema.max_properties is not None and len(mapping) > schema.max_properties:
            raise SchemaValidationError(
                path, f"expected at most {schema.max_properties} properties, got {len(mapping)}"
            )
        for name in schema.required:
            if name not in mapping:
                raise SchemaValidationError(path, f"missing required property: {name}")
        for name, sub in schema.properties.items():
            if name in mapping:
                self.check(mapping[name], sub, f"{path}.{name}" if path else name)

    def _array(self, value: Any, schema: Schema, path: str) -> None:
        if not isinstance(value, (list, tuple)):
            raise SchemaValidationError(path, f"expected array, got {type(value).__name__}")
        if schema.min_items is not None and len(value) < schema.min_items:
            raise SchemaValidationError(path, f"expected at least {schema.min_items} items, got {len(value)}")
        if schema.max_items is not None and len(value) > schema.max_items:
            raise SchemaValidationError(path, f"expected at most {schema.max_items} items, got {len(value)}")
        if schema.items is not None:
            for i, item in enumerate(value):
                self.check(item, schema.items, f"{path}[{i}]")

    def _string(self, value: Any, schema: Schema, path: str) -> None:
        if not isinstance(value, str):
            raise SchemaValidationError(path, f"expected string, got {type(value).__name__}")
        if schema.min_length is not None and len(value) < schema.min_length:
            raise SchemaValidationError(path, f"string shorter than {schema.min_length}")
        if schema.max_length is not None and len(value) > schema.max_length:
            raise SchemaValidationError(path, f"string longer than {schema.max_length}")
        if schema.pattern and re.search(schema.pattern, value) is None:
            raise SchemaValidationError(path, f"string does not match pattern {schema.pattern}")
        if schema.enum is not None and value not in schema.enum:
            raise SchemaValidationError(path, f"value {value!r} not in enum {schema.enum}")

    def _number(self, value: Any, schema: Schema, path: str, integer: bool) -> Any:
        expected = "integer" if integer else "number"
        if isinstance(value, str) and self.soft:
            try:
                value = int(value) if integer else float(value)
            except ValueError:
                raise SchemaValidationError(path, f"expected {expected}, got unparseable string {value!r}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise SchemaValidationError(path, f"expected {expected}, got {type(value).__name__}")
        if integer and isinstance(value, float):
            if not (math.isfinite(value) and value.is_integer()):
                raise SchemaValidationError(path, "expected integer, got float")
        if schema.minimum is not None and value < schema.minimum:
            raise SchemaValidationError(path, f"value {value} is less than minimum {schema.minimum}")
        if schema.maximum is not None and value > schema.maximum:
            raise SchemaValidationError(path, f"value {value} is greater than maximum {schema.maximum}")
        return value

    def _boolean(self, value: Any, path: str) -> bool:
        """Return the boolean, parsing strings in soft mode."""
        if isinstance(value, bool):
            return value
        if self.soft and isinstance(value, str) and value.lower() in ("true", "false", "1", "0"):
            return value.lower() in ("true", "1")
        raise SchemaValidationError(path, f"expected boolean, got {type(value).__name__}")
