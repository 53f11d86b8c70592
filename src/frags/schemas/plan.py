# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Plan definition schemas for frags.

Follows the load → compile → run pattern:
- Plan YAML (dict) → compile → Plan (dataclasses) → run → progress map
- Templates inside prompts/identifiers are rendered at run time
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from frags.schemas.json_schema import Schema


@dataclass
class Resource:
    """A named input fed to the model or decoded into vars.

    ``identifier`` may itself be a template.
    """
    identifier: str
    media_type: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    destination: str = "ai"  # "ai" | "vars"
    var: Optional[str] = None


@dataclass
class ToolDefinition:
    """Permission for a session to use a set of functions."""
    name: str
    type: str = "function"  # function | mcp | collection | internet_search
    allowlist: Optional[List[str]] = None
    description: Optional[str] = None
    input_schema: Optional[Schema] = None


@dataclass
class Dependency:
    """Edge into a session: on another session, or on a boolean expression."""
    session: Optional[str] = None
    expression: Optional[str] = None


@dataclass
class Transformer:
    """Post-processor applied to a progress map slice.

    Exactly one of script/regex/expr/jsonata is set.
    """
    name: Optional[str] = None
    script: Optional[str] = None
    engine: str = "javascript"
    regex: Optional[str] = None
    replace: str = ""
    expr: Optional[str] = None
    jsonata: Optional[str] = None
    phase: Optional[int] = None
    on_function_input: Optional[str] = None
    on_function_output: Optional[str] = None
    on_resource: Optional[str] = None

    @property
    def kind(self) -> str:
        for kind in ("script", "regex", "expr", "jsonata"):
            if getattr(self, kind) is not None:
                return kind
        return ""


@dataclass
class PreCall:
    """Function call executed before a session's first prompt."""
    name: Optional[str] = None
    code: Optional[str] = None
    args: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    destination: str = "ai"  # "ai" | "vars"
    var: Optional[str] = None


@dataclass
class Session:
    """A named unit of work producing one slice of the output."""
    name: str
    prompt: str = ""
    pre_prompt: List[str] = field(default_factory=list)
    next_phase_prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    resources: List[Resource] = field(default_factory=list)
    tools: List[ToolDefinition] = field(default_factory=list)
    transformers: List[Transformer] = field(default_factory=list)
    depends_on: List[Dependency] = field(default_factory=list)
    pre_calls: List[PreCall] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    context: bool = False
    attempts: int = 1
    timeout: Optional[float] = None
    # array expression; the session runs once per item with ``.it`` bound
    iterate_on: Optional[str] = None

    def phase_transformers(self, phase: int) -> List[Transformer]:
        return [t for t in self.transformers if t.phase == phase]

    def session_transformers(self) -> List[Transformer]:
        return [t for t in self.transformers if t.phase is None]


@dataclass
class RequiredTool:
    name: str
    type: str = "function"


@dataclass
class Plan:
    """A compiled plan ready to run."""
    sessions: Dict[str, Session]
    schema: Schema
    components: Dict[str, Schema] = field(default_factory=dict)
    parameters: Optional[Schema] = None
    vars: Dict[str, Any] = field(default_factory=dict)
    system_prompt: Optional[str] = None
    transformers: List[Transformer] = field(default_factory=list)
    required_tools: List[RequiredTool] = field(default_factory=list)
    source: Dict[str, Any] = field(default_factory=dict)
