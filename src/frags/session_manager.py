# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Session manager: owns the compiled plan, its vars and its parameters."""

from pathlib import Path
from typing import Any, Dict, Optional, Union

from frags.compiler import compile_plan, load_plan_yaml, parse_plan_yaml
from frags.evaluator import EvalScope, evaluate_map_values
from frags.schemas.json_schema import Schema
from frags.schemas.plan import Plan, Session
from frags.schemas.validator import validate


class SessionManager:
    """Holds one plan for the lifetime of a run."""

    def __init__(self, plan: Plan):
        self.plan = plan
        self.vars: Dict[str, Any] = dict(plan.vars)
        self.loose_params = False

    @classmethod
    def from_yaml(cls, text: str) -> "SessionManager":
        return cls(compile_plan(parse_plan_yaml(text)))

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SessionManager":
        return cls(compile_plan(load_plan_yaml(path)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionManager":
        return cls(compile_plan(data))

    @property
    def sessions(self) -> Dict[str, Session]:
        return self.plan.sessions

    @property
    def schema(self) -> Schema:
        return self.plan.schema

    def set_loose_params(self, loose: bool) -> None:
        """Let string params satisfy numeric/boolean parameter schemas."""
        self.loose_params = loose

    def check_params(self, params: Optional[Dict[str, Any]]) -> None:
        """Validate ``params`` against the declared parameters schema.

        Raises:
            SchemaValidationError: If a parameter is missing or mistyped
        """
        if self.plan.parameters is None:
            return
        schema = self.plan.parameters.clone()
        schema.resolve(self.plan.components)
        validate(params or {}, schema, soft=self.loose_params)

    def resolved_schema(self) -> Schema:
        """Output schema with component refs substituted."""
        schema = self.plan.schema.clone()
        schema.resolve(self.plan.components)
        return schema

    def evaluate_vars(self, scope: EvalScope) -> Dict[str, Any]:
        """Evaluate plan vars against ``scope`` and keep the result."""
        self.vars = evaluate_map_values(dict(self.plan.vars), scope) or {}
        return self.vars
