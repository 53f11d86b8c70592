"""Tests for the extended JSON Schema model: slicing and ref resolution.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import pytest

from frags.errors import PlanParseError
from frags.schemas.json_schema import Schema, parameters_schema, schemas_from_dict


def _output_schema() -> Schema:
    return Schema.from_dict({
        "type": "object",
        "required": ["title", "body", "tags", "summary"],
        "properties": {
            "title": {"type": "string", "x-phase": 0},
            "body": {"type": "string", "x-phase": 1},
            "tags": {"type": "array", "items": {"type": "string"}, "x-phase": 1},
            "summary": {"type": "string", "x-session": "review"},
        },
    })


class TestSchemaFromDict:
    """Test building schemas from YAML/JSON mappings."""

    def test_keeps_authored_property_order(self):
        """Test properties keep the order they were written in."""
        schema = _output_schema()
        assert list(schema.properties) == ["title", "body", "tags", "summary"]

    def test_unknown_type_rejected(self):
        """Test an unknown type is a plan-parse error."""
        with pytest.raises(PlanParseError, match="unknown schema type"):
            Schema.from_dict({"type": "strng"})

    def test_negative_phase_rejected(self):
        """Test x-phase must be a non-negative integer."""
        with pytest.raises(PlanParseError, match="x-phase"):
            Schema.from_dict({"type": "object", "properties": {"a": {"type": "string", "x-phase": -1}}})

    def test_unknown_keywords_round_trip(self):
        """Test keywords the model does not know are kept in extra."""
        schema = Schema.from_dict({"type": "string", "x-custom": 1})
        assert schema.to_dict() == {"type": "string", "x-custom": 1}

    def test_strip_extensions(self):
        """Test stripping removes partitioning keywords only."""
        data = _output_schema().to_dict(strip_extensions=True)
        assert "x-phase" not in data["properties"]["title"]
        assert "x-session" not in data["properties"]["summary"]
        assert data["properties"]["tags"]["items"] == {"type": "string"}


class TestSlicing:
    """Test phase and session slices."""

    def test_phase_indexes_sorted_unique(self):
        """Test phases without x-phase count as phase 0."""
        assert _output_schema().get_phase_indexes() == [0, 1]

    def test_get_phase_properties_and_required(self):
        """Test a phase keeps its own properties and the matching required keys."""
        phase = _output_schema().get_phase(1)
        assert list(phase.properties) == ["body", "tags"]
        assert phase.required == ["body", "tags"]

    def test_get_phase_unknown(self):
        """Test asking for a missing phase."""
        with pytest.raises(PlanParseError, match="phase not found: 7"):
            _output_schema().get_phase(7)

    def test_session_ids_default(self):
        """Test properties without x-session belong to the default session."""
        assert _output_schema().get_session_ids() == ["default", "review"]

    def test_get_session(self):
        """Test slicing by session."""
        session = _output_schema().get_session("review")
        assert list(session.properties) == ["summary"]
        assert session.required == ["summary"]

    def test_get_session_unknown(self):
        """Test asking for a missing session."""
        with pytest.raises(PlanParseError, match="session not found in schema: nope"):
            _output_schema().get_session("nope")

    def test_slice_does_not_touch_original(self):
        """Test slicing leaves the root schema intact."""
        schema = _output_schema()
        schema.get_phase(0)
        assert len(schema.properties) == 4
        assert len(schema.required) == 4

    def test_property_ordering_wins(self):
        """Test propertyOrdering comes before authored order."""
        schema = Schema.from_dict({
            "type": "object",
            "propertyOrdering": ["b"],
            "properties": {"a": {"type": "string"}, "b": {"type": "string"}},
        })
        assert list(schema.get_phase(0).properties) == ["b", "a"]

    def test_phase_slice_matches_definition(self):
        """Test every phase slice equals the properties tagged with it."""
        schema = _output_schema()
        for phase in schema.get_phase_indexes():
            expected = {k for k in schema.properties if (schema.properties[k].x_phase or 0) == phase}
            sliced = schema.get_phase(phase)
            assert set(sliced.properties) == expected
            assert set(sliced.required) == set(schema.required) & expected


class TestResolve:
    """Test $ref substitution."""

    def test_resolves_component(self):
        """Test a ref is replaced by the component body."""
        components = schemas_from_dict({
            "Person": {"type": "object", "properties": {"name": {"type": "string"}}},
        })
        schema = Schema.from_dict({
            "type": "object",
            "properties": {"owner": {"$ref": "#/components/schemas/Person", "x-phase": 1}},
        })
        schema.resolve(components)
        owner = schema.properties["owner"]
        assert owner.type == "object"
        assert owner.ref is None
        assert owner.x_phase == 1
        assert "name" in owner.properties

    def test_unknown_ref(self):
        """Test a ref to a missing component."""
        schema = Schema.from_dict({"type": "object", "properties": {"x": {"$ref": "#/components/schemas/Nope"}}})
        with pytest.raises(PlanParseError, match="schema not found"):
            schema.resolve({})

    def test_external_ref_rejected(self):
        """Test only intra-document refs are supported."""
        schema = Schema.from_dict({"$ref": "http://example.com/schema.json"})
        with pytest.raises(PlanParseError, match="unsupported \\$ref"):
            schema.resolve({})

    def test_recursive_ref_stays_ref(self):
        """Test a self-referencing component is not expanded forever."""
        components = schemas_from_dict({
            "Node": {
                "type": "object",
                "properties": {
                    "label": {"type": "string"},
                    "children": {"type": "array", "items": {"$ref": "#/components/schemas/Node"}},
                },
            },
        })
        schema = Schema.from_dict({"type": "object", "properties": {"tree": {"$ref": "#/components/schemas/Node"}}})
        schema.resolve(components)

        inner = schema.properties["tree"].properties["children"].items
        assert inner.recursive is True
        assert inner.ref == "#/components/schemas/Node"
        stripped = inner.to_dict(strip_extensions=True)
        assert "$ref" not in stripped
        assert stripped["type"] == "object"

    def test_resolve_idempotent(self):
        """Test resolving a resolved schema changes nothing."""
        components = schemas_from_dict({
            "Node": {"type": "object", "properties": {"next": {"$ref": "#/components/schemas/Node"}}},
            "Tag": {"type": "string"},
        })
        schema = Schema.from_dict({
            "type": "object",
            "properties": {
                "root": {"$ref": "#/components/schemas/Node"},
                "tag": {"$ref": "#/components/schemas/Tag"},
            },
        })
        schema.resolve(components)
        once = schema.to_dict()
        schema.resolve(components)
        assert schema.to_dict() == once


class TestParametersSchema:
    """Test the two accepted parameter declarations."""

    def test_none(self):
        """Test no parameters."""
        assert parameters_schema(None) is None

    def test_list_form_all_required(self):
        """Test list entries are all required."""
        schema = parameters_schema([
            {"name": "count", "schema": {"type": "integer"}},
            {"name": "topic", "schema": {"type": "string"}},
        ])
        assert schema.required == ["count", "topic"]
        assert schema.properties["count"].type == "integer"

    def test_list_entry_without_name(self):
        """Test a list entry must be named."""
        with pytest.raises(PlanParseError, match="parameters\\[0\\]"):
            parameters_schema([{"schema": {"type": "string"}}])
