# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Function registry - the callables a model may use.

Local collections and MCP tools share one flat namespace. MCP tools are
registered as ``<server>__<tool>``. Sessions get a view of the registry
selected by their tool definitions.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from frags.errors import FragsError, PlanParseError, SchemaValidationError, ToolError
from frags.schemas.json_schema import Schema
from frags.schemas.plan import ToolDefinition
from frags.schemas.validator import validate


logger = logging.getLogger(__name__)

MCP_SEPARATOR = "__"


class RunnerHandle(Protocol):
    """What a function may call back into while it runs."""

    def run_function(self, name: str, args: Dict[str, Any]) -> Any:
        ...


@dataclass
class Function:
    """A callable exposed to the model.

    ``func`` receives the validated args and the runner handle.
    """
    name: str
    func: Callable[[Dict[str, Any], Optional[RunnerHandle]], Any]
    description: str = ""
    input_schema: Optional[Schema] = None
    collection: Optional[str] = None

    @property
    def short_name(self) -> str:
        prefix = f"{self.collection}{MCP_SEPARATOR}"
        if self.collection and self.name.startswith(prefix):
            return self.name[len(prefix):]
        return self.name


@dataclass
class FunctionRegistry:
    """Flat ``name -> Function`` mapping with invocation hooks."""
    functions: Dict[str, Function] = field(default_factory=dict)
    on_input: Optional[Callable[[str, Dict[str, Any]], Dict[str, Any]]] = None
    on_output: Optional[Callable[[str, Any], Any]] = None

    def register(self, function: Function) -> None:
        if function.name in self.functions:
            logger.warning(f"Function {function.name} registered twice, keeping the latest")
        self.functions[function.name] = function

    def extend(self, functions: Iterable[Function]) -> None:
        for function in functions:
            self.register(function)

    def get(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def names(self) -> List[str]:
        return list(self.functions)

    def __contains__(self, name: str) -> bool:
        return name in self.functions

    def __len__(self) -> int:
        return len(self.functions)

    def __iter__(self):
        return iter(self.functions.values())

    def select(self, tools: Iterable[ToolDefinition]) -> "FunctionRegistry":
        """View of the registry restricted to ``tools``.

        Raises:
            PlanParseError: If a tool names something that is not registered
        """
        selected = FunctionRegistry(on_input=self.on_input, on_output=self.on_output)
        for tool in tools:
            if tool.type == "internet_search":
                continue
            if tool.type == "function":
                function = self.functions.get(tool.name)
                if function is None:
                    raise PlanParseError(f"unknown function: {tool.name}")
                selected.functions[function.name] = _with_description(function, tool)
                continue
            members = [f for f in self.functions.values() if f.collection == tool.name]
            if not members:
                raise PlanParseError(f"unknown {tool.type}: {tool.name}")
            for function in members:
                if tool.allowlist is not None and not (
                    function.short_name in tool.allowlist or function.name in tool.allowlist
                ):
                    continue
                selected.functions[function.name] = function
        return selected

    # -------------------------------------------------------------------------
    # Invocation
    # -------------------------------------------------------------------------

    def call(self, name: str, args: Optional[Dict[str, Any]], runner: Optional[RunnerHandle] = None) -> Any:
        """Invoke a function and return its result.

        Raises:
            ToolError: Unknown function, invalid args, or the function failed
        """
        function = self.functions.get(name)
        if function is None:
            raise ToolError(f"unknown function: {name}")
        args = dict(args or {})
        if self.on_input is not None:
            args = self.on_input(name, args)
        if function.input_schema is not None:
            try:
                validate(args, function.input_schema)
            except SchemaValidationError as e:
                raise ToolError(f"invalid arguments for {name}: {e}")
        logger.debug(f"Calling function {name} with {args}")
        try:
            result = function.func(args, runner)
        except ToolError:
            raise
        except FragsError as e:
            raise ToolError(str(e), fatal=e.kind == "cancelled")
        except Exception as e:
            raise ToolError(f"{name} failed: {e}")
        if self.on_output is not None:
            result = self.on_output(name, result)
        return result

    def invoke(self, name: str, args: Optional[Dict[str, Any]], runner: Optional[RunnerHandle] = None) -> Dict[str, Any]:
        """Invoke a function for the model.

        Errors come back as ``{"error": msg}`` so the model can recover;
        only fatal tool errors raise.
        """
        try:
            result = self.call(name, args, runner)
        except ToolError as e:
            if e.fatal:
                raise
            logger.info(f"Function {name} returned an error to the model: {e}")
            return {"error": str(e)}
        if isinstance(result, dict):
            return result
        return {"result": result}


def _with_description(function: Function, tool: ToolDefinition) -> Function:
    if not tool.description and tool.input_schema is None:
        return function
    return Function(
        name=function.name,
        func=function.func,
        description=tool.description or function.description,
        input_schema=tool.input_schema or function.input_schema,
        collection=function.collection,
    )
