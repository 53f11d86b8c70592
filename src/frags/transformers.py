# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Transformers - post-processing of progress map slices.

A chain runs in declaration order; each transformer receives the output of
the previous one. A result that is not a mapping is wrapped as
``{"result": value}``.

Kinds:
- script:  JavaScript with ``args`` and ``runFunction``
- regex:   substitution on every string leaf; ``replace`` is a template
- expr:    expression evaluated with the data bound to ``args``
- jsonata: JSONata query over the data
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional

import jsonata

from frags.errors import FragsError, TransformError
from frags.evaluator import EvalScope, evaluate_expression, render_template
from frags.functions import RunnerHandle
from frags.resources import ResourceData
from frags.schemas.plan import Transformer
from frags.scripting import NoopScriptEngine, ScriptEngine


logger = logging.getLogger(__name__)

# "$1" / "${name}" group references in regex replacements
_GROUP_REF_PATTERN = re.compile(r"\$(\d+)|\$\{(\w+)\}")


class TransformerPipeline:
    """Applies transformer chains with a shared script engine."""

    def __init__(
        self,
        engine: Optional[ScriptEngine] = None,
        runner: Optional[RunnerHandle] = None,
    ):
        self.engine = engine or NoopScriptEngine()
        self.runner = runner

    def apply(
        self,
        transformers: List[Transformer],
        data: Any,
        scope: EvalScope,
        wrap: bool = True,
    ) -> Any:
        """Run ``transformers`` over ``data`` in order and return the result."""
        for transformer in transformers:
            data = self.apply_one(transformer, data, scope)
            if wrap and not isinstance(data, dict):
                data = {"result": data}
        return data

    def apply_one(self, transformer: Transformer, data: Any, scope: EvalScope) -> Any:
        kind = transformer.kind
        label = transformer.name or kind
        logger.debug(f"Applying transformer {label}")
        try:
            if kind == "script":
                if transformer.engine not in ("javascript", "js"):
                    raise TransformError(f"unsupported script engine: {transformer.engine}")
                return self.engine.run(transformer.script, data, self.runner)
            if kind == "regex":
                return _regex_replace(transformer, data, scope)
            if kind == "expr":
                return evaluate_expression(transformer.expr, scope, extra={"args": data})
            if kind == "jsonata":
                return jsonata.Jsonata(transformer.jsonata).evaluate(data)
        except FragsError:
            raise
        except Exception as e:
            raise TransformError(f"transformer {label} failed: {e}") from e
        raise TransformError(f"transformer {label} has no script, regex, expr or jsonata")

    # -------------------------------------------------------------------------
    # Plan-level hooks
    # -------------------------------------------------------------------------

    def function_input_hook(
        self, transformers: List[Transformer], scope: Callable[[], EvalScope]
    ) -> Optional[Callable[[str, Dict[str, Any]], Dict[str, Any]]]:
        """Hook applying ``onFunctionInput`` transformers to call arguments."""
        if not any(t.on_function_input for t in transformers):
            return None

        def hook(name: str, args: Dict[str, Any]) -> Dict[str, Any]:
            chain = [t for t in transformers if _matches(t.on_function_input, name)]
            return self.apply(chain, args, scope()) if chain else args

        return hook

    def function_output_hook(
        self, transformers: List[Transformer], scope: Callable[[], EvalScope]
    ) -> Optional[Callable[[str, Any], Any]]:
        """Hook applying ``onFunctionOutput`` transformers to call results."""
        if not any(t.on_function_output for t in transformers):
            return None

        def hook(name: str, result: Any) -> Any:
            chain = [t for t in transformers if _matches(t.on_function_output, name)]
            return self.apply(chain, result, scope()) if chain else result

        return hook

    def transform_resource(
        self, transformers: List[Transformer], resource: ResourceData, scope: EvalScope
    ) -> ResourceData:
        """Apply ``onResource`` transformers matching the resource identifier."""
        chain = [t for t in transformers if _matches(t.on_resource, resource.identifier)]
        if not chain:
            return resource
        try:
            data = resource.decode()
        except FragsError:
            data = resource.text()
        resource.set_content(self.apply(chain, data, scope, wrap=False))
        return resource


def _matches(target: Optional[str], name: str) -> bool:
    return target is not None and (target == name or target == "*")


def _regex_replace(transformer: Transformer, data: Any, scope: EvalScope) -> Any:
    pattern = re.compile(transformer.regex)
    replacement = _GROUP_REF_PATTERN.sub(
        lambda m: f"\\g<{m.group(1) or m.group(2)}>",
        render_template(transformer.replace, scope),
    )

    def walk(value: Any) -> Any:
        if isinstance(value, str):
            return pattern.sub(replacement, value)
        if isinstance(value, dict):
            return {k: walk(v) for k, v in value.items()}
        if isinstance(value, list):
            return [walk(v) for v in value]
        return value

    return walk(data)
