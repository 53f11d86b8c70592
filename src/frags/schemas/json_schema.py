# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Extended JSON Schema used to describe plan output and parameters.

Two extensions partition a single output object:
- ``x-phase``: ordered step of a session in which a property is produced
- ``x-session``: the session that produces a property

Properties without ``x-session`` belong to the ``default`` session.
Properties without ``x-phase`` belong to phase 0.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from frags.errors import PlanParseError


DEFAULT_SESSION = "default"
REF_PREFIX = "#/components/schemas/"

TYPES = ("object", "array", "string", "number", "integer", "boolean")

# dict key -> dataclass attribute for scalar keywords
_SCALAR_KEYS = {
    "type": "type",
    "description": "description",
    "title": "title",
    "format": "format",
    "pattern": "pattern",
    "minimum": "minimum",
    "maximum": "maximum",
    "minLength": "min_length",
    "maxLength": "max_length",
    "minItems": "min_items",
    "maxItems": "max_items",
    "minProperties": "min_properties",
    "maxProperties": "max_properties",
    "nullable": "nullable",
    "enum": "enum",
    "example": "example",
    "default": "default",
    "$ref": "ref",
    "x-phase": "x_phase",
    "x-session": "x_session",
}

_STRUCTURAL_KEYS = {"properties", "required", "items", "anyOf", "propertyOrdering"}


@dataclass
class Schema:
    """A node of an extended JSON Schema.

    ``properties`` keeps the authored key order, which is the tie-break
    after ``propertyOrdering``.
    """
    type: str = ""
    description: Optional[str] = None
    title: Optional[str] = None
    format: Optional[str] = None
    properties: Dict[str, "Schema"] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)
    property_ordering: List[str] = field(default_factory=list)
    items: Optional["Schema"] = None
    any_of: List["Schema"] = field(default_factory=list)
    enum: Optional[List[Any]] = None
    pattern: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    min_properties: Optional[int] = None
    max_properties: Optional[int] = None
    nullable: Optional[bool] = None
    example: Any = None
    default: Any = None
    ref: Optional[str] = None
    x_phase: Optional[int] = None
    x_session: Optional[str] = None
    # Set on a $ref node left unexpanded because it refers to itself.
    recursive: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Construction / serialization
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Any, path: str = "") -> "Schema":
        """Build a Schema from a parsed YAML/JSON mapping."""
        if isinstance(data, Schema):
            return data
        if not isinstance(data, dict):
            raise PlanParseError(f"schema at '{path or '<root>'}' must be a mapping")

        schema = cls()
        for key, value in data.items():
            if key in _SCALAR_KEYS:
                setattr(schema, _SCALAR_KEYS[key], value)
            elif key not in _STRUCTURAL_KEYS:
                schema.extra[key] = value

        if schema.type and schema.type not in TYPES:
            raise PlanParseError(f"unknown schema type '{schema.type}' at '{path or '<root>'}'")
        if schema.x_phase is not None:
            if not isinstance(schema.x_phase, int) or schema.x_phase < 0:
                raise PlanParseError(f"x-phase must be a non-negative integer at '{path}'")
        if schema.x_session is not None and not isinstance(schema.x_session, str):
            raise PlanParseError(f"x-session must be a string at '{path}'")

        for name, sub in (data.get("properties") or {}).items():
            schema.properties[name] = cls.from_dict(sub, _join(path, name))
        schema.required = list(data.get("required") or [])
        schema.property_ordering = list(data.get("propertyOrdering") or [])
        if data.get("items") is not None:
            schema.items = cls.from_dict(data["items"], f"{path}[]")
        schema.any_of = [
            cls.from_dict(sub, f"{path}.anyOf[{i}]")
            for i, sub in enumerate(data.get("anyOf") or [])
        ]
        return schema

    def to_dict(self, strip_extensions: bool = False) -> Dict[str, Any]:
        """Serialize back to a JSON-compatible mapping.

        Args:
            strip_extensions: Drop ``x-phase``/``x-session`` (and unexpanded
                recursive refs) so the payload is safe to send to a model.
        """
        out: Dict[str, Any] = {}
        for key, attr in _SCALAR_KEYS.items():
            if strip_extensions and key in ("x-phase", "x-session"):
                continue
            value = getattr(self, attr)
            if value is None or value == "":
                continue
            out[key] = value
        if self.properties:
            out["properties"] = {
                k: v.to_dict(strip_extensions) for k, v in self.properties.items()
            }
        if self.required:
            out["required"] = list(self.required)
        if self.property_ordering and not strip_extensions:
            out["propertyOrdering"] = list(self.property_ordering)
        if self.items is not None:
            out["items"] = self.items.to_dict(strip_extensions)
        if self.any_of:
            out["anyOf"] = [s.to_dict(strip_extensions) for s in self.any_of]
        if strip_extensions and self.recursive:
            # Upstream schemas cannot carry local refs; degrade to "any object".
            out.pop("$ref", None)
            out.setdefault("type", "object")
        out.update(self.extra)
        return out

    def clone(self) -> "Schema":
        """Deep copy of this schema."""
        return copy.deepcopy(self)

    # -------------------------------------------------------------------------
    # Phase / session slicing
    # -------------------------------------------------------------------------

    def ordered_property_names(self) -> List[str]:
        """Property names by ``propertyOrdering`` first, then authored order."""
        names = [n for n in self.property_ordering if n in self.properties]
        names.extend(n for n in self.properties if n not in names)
        return names

    def phase_of(self, name: str) -> int:
        phase = self.properties[name].x_phase
        return 0 if phase is None else phase

    def session_of(self, name: str) -> str:
        return self.properties[name].x_session or DEFAULT_SESSION

    def get_phase_indexes(self) -> List[int]:
        """Sorted unique phase indexes across top-level properties."""
        return sorted({self.phase_of(n) for n in self.properties})

    def get_session_ids(self) -> List[str]:
        """Unique session ids in property order."""
        ids: List[str] = []
        for name in self.ordered_property_names():
            sid = self.session_of(name)
            if sid not in ids:
                ids.append(sid)
        return ids

    def get_phase(self, phase: int) -> "Schema":
        """Shallow clone holding only the properties of ``phase``."""
        if phase not in self.get_phase_indexes():
            raise PlanParseError(f"phase not found: {phase}")
        return self._slice(lambda name: self.phase_of(name) == phase)

    def get_session(self, session_id: str) -> "Schema":
        """Shallow clone holding only the properties of ``session_id``."""
        if session_id not in self.get_session_ids():
            raise PlanParseError(f"session not found in schema: {session_id}")
        return self._slice(lambda name: self.session_of(name) == session_id)

    def _slice(self, keep) -> "Schema":
        sliced = copy.copy(self)
        names = [n for n in self.ordered_property_names() if keep(n)]
        sliced.properties = {n: self.properties[n] for n in names}
        sliced.required = [r for r in self.required if r in sliced.properties]
        sliced.property_ordering = [p for p in self.property_ordering if p in sliced.properties]
        return sliced

    # -------------------------------------------------------------------------
    # $ref resolution
    # -------------------------------------------------------------------------

    def resolve(self, components: Optional[Dict[str, "Schema"]] = None) -> None:
        """Substitute ``#/components/schemas/<Name>`` refs in place.

        A ref that re-enters one of the refs currently being expanded stays
        as a ref (marked ``recursive``), so calling ``resolve`` again is a
        no-op.

        Raises:
            PlanParseError: If a ref points at an unknown component
        """
        _resolve_node(self, components or {}, set())


def _resolve_node(node: Schema, components: Dict[str, Schema], visiting: Set[str]) -> None:
    if node.ref and not node.recursive:
        if not node.ref.startswith(REF_PREFIX):
            raise PlanParseError(f"unsupported $ref: {node.ref}")
        name = node.ref[len(REF_PREFIX):]
        if name not in components:
            raise PlanParseError(f"schema not found: {node.ref}")
        if name in visiting:
            node.recursive = True
            return
        target = components[name].clone()
        # the referring node keeps its own partitioning and annotations
        keep_phase, keep_session = node.x_phase, node.x_session
        keep_description = node.description
        for attr in target.__dataclass_fields__:
            setattr(node, attr, getattr(target, attr))
        node.ref = None
        node.x_phase = keep_phase if keep_phase is not None else target.x_phase
        node.x_session = keep_session if keep_session is not None else target.x_session
        if keep_description:
            node.description = keep_description
        visiting = visiting | {name}

    for sub in node.properties.values():
        _resolve_node(sub, components, visiting)
    if node.items is not None:
        _resolve_node(node.items, components, visiting)
    for sub in node.any_of:
        _resolve_node(sub, components, visiting)


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def schemas_from_dict(data: Optional[Dict[str, Any]]) -> Dict[str, Schema]:
    """Parse a ``name -> schema`` mapping of components."""
    return {
        name: Schema.from_dict(body, f"components.{name}")
        for name, body in (data or {}).items()
    }


def parameters_schema(data: Any) -> Optional[Schema]:
    """Build the parameters schema.

    Accepts either an object schema mapping, or a list of
    ``{name, schema}`` entries in which case every entry is required.
    """
    if data is None:
        return None
    if isinstance(data, list):
        schema = Schema(type="object")
        for i, entry in enumerate(data):
            if not isinstance(entry, dict) or "name" not in entry:
                raise PlanParseError(f"parameters[{i}] must have a 'name'")
            schema.properties[entry["name"]] = Schema.from_dict(
                entry.get("schema") or {}, f"parameters.{entry['name']}"
            )
            schema.required.append(entry["name"])
        return schema
    return Schema.from_dict(data, "parameters")
