# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Compiler - Transform plan YAML into a Plan.

Parses sessions, schemas, parameters and transformers, and checks the
structural rules a run depends on:
- every x-session names a declared session
- phases are non-negative integers
- refs point at declared components (checked when the schema is resolved)

Templates inside prompts and identifiers are left as-is; they are rendered
at run time against params, vars and progress.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from frags.errors import PlanParseError
from frags.schemas.json_schema import (
    DEFAULT_SESSION,
    Schema,
    parameters_schema,
    schemas_from_dict,
)
from frags.schemas.plan import (
    Dependency,
    Plan,
    PreCall,
    RequiredTool,
    Resource,
    Session,
    ToolDefinition,
    Transformer,
)


DURATION_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)?$")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, None: 1}


def load_plan_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a plan definition YAML from a file."""
    path = Path(path).expanduser()
    if not path.exists():
        raise PlanParseError(f"Plan not found: {path}")
    return parse_plan_yaml(path.read_text())


def parse_plan_yaml(text: str) -> Dict[str, Any]:
    """Parse a plan definition from YAML (or JSON) text."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise PlanParseError(f"Invalid plan YAML: {e}")
    if not isinstance(data, dict):
        raise PlanParseError("Plan must be a YAML mapping")
    return data


def parse_duration(value: Any) -> Optional[float]:
    """Parse ``90``, ``"90s"``, ``"5m"``, ``"1h"`` into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    match = DURATION_PATTERN.match(str(value).strip())
    if not match:
        raise PlanParseError(f"Invalid duration: {value}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def compile_plan(plan_def: Dict[str, Any]) -> Plan:
    """
    Compile plan YAML → Plan.

    Args:
        plan_def: The entire YAML dict

    Returns:
        Plan ready to be run

    Raises:
        PlanParseError: If the plan is malformed
    """
    sessions_def = plan_def.get("sessions")
    if not isinstance(sessions_def, dict) or not sessions_def:
        raise PlanParseError("Plan must declare at least one session under 'sessions'")

    sessions = {
        name: _compile_session(name, body or {})
        for name, body in sessions_def.items()
    }

    components_def = plan_def.get("schemas")
    if components_def is None:
        components_def = (plan_def.get("components") or {}).get("schemas")
    components = schemas_from_dict(components_def)

    if plan_def.get("schema") is not None:
        schema = Schema.from_dict(plan_def["schema"])
        if schema.type not in ("", "object"):
            raise PlanParseError("Plan schema must be an object schema")
    else:
        schema = null_schema(list(sessions))

    for name in schema.properties:
        session_id = schema.session_of(name)
        if session_id not in sessions:
            raise PlanParseError(
                f"Property '{name}' belongs to unknown session '{session_id}'"
                + (" (add a 'default' session or set x-session)" if session_id == DEFAULT_SESSION else "")
            )

    return Plan(
        sessions=sessions,
        schema=schema,
        components=components,
        parameters=parameters_schema(plan_def.get("parameters")),
        vars=dict(plan_def.get("vars") or {}),
        system_prompt=plan_def.get("systemPrompt"),
        transformers=[_compile_transformer(t, "transformers") for t in plan_def.get("transformers") or []],
        required_tools=[
            RequiredTool(name=t["name"], type=t.get("type", "function"))
            for t in plan_def.get("requiredTools") or []
        ],
        source=plan_def,
    )


def null_schema(session_names: List[str]) -> Schema:
    """Schema for a plan without one: a string property per session."""
    schema = Schema(type="object")
    for name in session_names:
        schema.properties[name] = Schema(type="string", x_session=name, x_phase=0)
        schema.required.append(name)
    return schema


def _compile_session(name: str, body: Dict[str, Any]) -> Session:
    if not isinstance(body, dict):
        raise PlanParseError(f"Session '{name}' must be a mapping")
    pre_prompt = body.get("prePrompt") or []
    if isinstance(pre_prompt, str):
        pre_prompt = [pre_prompt]

    attempts = body.get("attempts", 1)
    if not isinstance(attempts, int) or attempts < 1:
        raise PlanParseError(f"Session '{name}': attempts must be a positive integer")
    iterate_on = body.get("iterateOn")
    if iterate_on is not None and (not isinstance(iterate_on, str) or not iterate_on.strip()):
        raise PlanParseError(f"Session '{name}': iterateOn must be an expression string")

    return Session(
        name=name,
        prompt=body.get("prompt") or "",
        pre_prompt=list(pre_prompt),
        next_phase_prompt=body.get("nextPhasePrompt"),
        system_prompt=body.get("systemPrompt"),
        resources=[_compile_resource(name, r) for r in body.get("resources") or []],
        tools=[_compile_tool(name, t) for t in body.get("tools") or []],
        transformers=[_compile_transformer(t, f"sessions.{name}.transformers") for t in body.get("transformers") or []],
        depends_on=_compile_dependencies(name, body.get("dependsOn")),
        pre_calls=[_compile_pre_call(name, c) for c in body.get("preCalls") or []],
        vars=dict(body.get("vars") or {}),
        context=bool(body.get("context", False)),
        attempts=attempts,
        timeout=parse_duration(body.get("timeout")),
        iterate_on=iterate_on,
    )


def _compile_resource(session: str, data: Any) -> Resource:
    if isinstance(data, str):
        return Resource(identifier=data)
    if not isinstance(data, dict) or "identifier" not in data:
        raise PlanParseError(f"Session '{session}': resources need an 'identifier'")
    destination = data.get("in", "ai")
    if destination not in ("ai", "vars"):
        raise PlanParseError(f"Session '{session}': resource 'in' must be 'ai' or 'vars'")
    return Resource(
        identifier=data["identifier"],
        media_type=data.get("mediaType"),
        params=dict(data.get("params") or {}),
        destination=destination,
        var=data.get("var"),
    )


def _compile_tool(session: str, data: Any) -> ToolDefinition:
    if isinstance(data, str):
        return ToolDefinition(name=data)
    if not isinstance(data, dict) or "name" not in data:
        raise PlanParseError(f"Session '{session}': tools need a 'name'")
    tool_type = data.get("type", "function")
    if tool_type not in ("function", "mcp", "collection", "internet_search"):
        raise PlanParseError(f"Session '{session}': unknown tool type '{tool_type}'")
    input_schema = data.get("inputSchema")
    return ToolDefinition(
        name=data["name"],
        type=tool_type,
        allowlist=data.get("allowlist"),
        description=data.get("description"),
        input_schema=Schema.from_dict(input_schema) if input_schema is not None else None,
    )


def _compile_transformer(data: Any, where: str) -> Transformer:
    if not isinstance(data, dict):
        raise PlanParseError(f"{where}: transformer must be a mapping")
    transformer = Transformer(
        name=data.get("name"),
        script=data.get("script") or data.get("code"),
        engine=data.get("engine", "javascript"),
        regex=data.get("regex"),
        replace=data.get("replace", ""),
        expr=data.get("expr"),
        jsonata=data.get("jsonata"),
        phase=data.get("phase"),
        on_function_input=data.get("onFunctionInput"),
        on_function_output=data.get("onFunctionOutput"),
        on_resource=data.get("onResource"),
    )
    kinds = [k for k in ("script", "regex", "expr", "jsonata") if getattr(transformer, k) is not None]
    if len(kinds) != 1:
        raise PlanParseError(f"{where}: transformer needs exactly one of script, regex, expr, jsonata")
    return transformer


def _compile_dependencies(session: str, data: Any) -> List[Dependency]:
    if data is None:
        return []
    if isinstance(data, (str, dict)):
        data = [data]
    deps = []
    for item in data:
        if isinstance(item, str):
            deps.append(Dependency(session=item))
        elif isinstance(item, dict) and ("session" in item or "expression" in item):
            deps.append(Dependency(session=item.get("session"), expression=item.get("expression")))
        else:
            raise PlanParseError(f"Session '{session}': invalid dependsOn entry {json.dumps(item, default=str)}")
    return deps


def _compile_pre_call(session: str, data: Any) -> PreCall:
    if not isinstance(data, dict) or not (data.get("name") or data.get("code")):
        raise PlanParseError(f"Session '{session}': preCalls need a 'name' or 'code'")
    destination = data.get("in", "ai")
    if destination not in ("ai", "vars"):
        raise PlanParseError(f"Session '{session}': preCall 'in' must be 'ai' or 'vars'")
    return PreCall(
        name=data.get("name"),
        code=data.get("code"),
        args=dict(data.get("args") or {}),
        description=data.get("description"),
        destination=destination,
        var=data.get("var"),
    )
