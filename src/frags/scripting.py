# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Script engines for transformers and code pre-calls.

Scripts get two globals: ``args`` (the data being transformed) and
``runFunction(name, args)`` which calls back into the function registry.
The value of the last expression statement is the result. There is no
other I/O.
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol

from frags.errors import ToolError, TransformError
from frags.functions import RunnerHandle

# Import guard: quickjs is an optional dependency
_QUICKJS_AVAILABLE = False
try:
    import quickjs as _quickjs

    _QUICKJS_AVAILABLE = True
except ImportError:
    _quickjs = None


logger = logging.getLogger(__name__)

SCRIPT_TIMEOUT_S = 60
SCRIPT_MEMORY_LIMIT = 64 * 1024 * 1024

_BRIDGE = """
var runFunction = function (name, fnArgs) {
    var res = JSON.parse(__frags_run_function(name, JSON.stringify(fnArgs === undefined ? {} : fnArgs)));
    if ("error" in res) { throw new Error(res.error); }
    return res.value;
};
"""


def _require_quickjs() -> None:
    """Raise clear error if quickjs not installed."""
    if not _QUICKJS_AVAILABLE:
        raise ImportError(
            "quickjs not installed. Install with: pip install 'frags[js]'"
        )


class ScriptEngine(Protocol):
    def run(self, code: str, args: Any, runner: Optional[RunnerHandle]) -> Any:
        ...


class NoopScriptEngine:
    """Stand-in when no engine is configured: returns ``args`` unchanged."""

    def run(self, code: str, args: Any, runner: Optional[RunnerHandle]) -> Any:
        logger.warning("No script engine configured, script skipped")
        return args


class JavascriptEngine:
    """Runs scripts in a fresh QuickJS context per call."""

    def __init__(
        self,
        timeout_s: float = SCRIPT_TIMEOUT_S,
        memory_limit: int = SCRIPT_MEMORY_LIMIT,
    ):
        _require_quickjs()
        self.timeout_s = timeout_s
        self.memory_limit = memory_limit

    def run(self, code: str, args: Any, runner: Optional[RunnerHandle]) -> Any:
        context = _quickjs.Context()
        context.set_time_limit(self.timeout_s)
        context.set_memory_limit(self.memory_limit)

        def bridge(name: str, raw_args: str) -> str:
            if runner is None:
                return json.dumps({"error": "runFunction is not available here"})
            try:
                value = runner.run_function(name, json.loads(raw_args))
            except ToolError as e:
                return json.dumps({"error": str(e)})
            return json.dumps({"value": value}, default=str)

        context.add_callable("__frags_run_function", bridge)
        try:
            context.eval(_BRIDGE)
            context.eval(f"var args = {json.dumps(args, default=str)};")
            result = context.eval(code)
        except _quickjs.JSException as e:
            raise TransformError(f"script failed: {e}")
        return _to_python(result)


def _to_python(value: Any) -> Any:
    if isinstance(value, _quickjs.Object):
        raw = value.json()
        return None if raw in (None, "undefined") else json.loads(raw)
    return value


def default_engine() -> ScriptEngine:
    """JavaScript engine when quickjs is installed, no-op otherwise."""
    if _QUICKJS_AVAILABLE:
        return JavascriptEngine()
    logger.debug("quickjs not installed, scripts will be skipped")
    return NoopScriptEngine()


def run_script_file(
    path: str,
    args: Dict[str, Any],
    runner: Optional[RunnerHandle] = None,
    engine: Optional[ScriptEngine] = None,
) -> Any:
    """Run a standalone script file (``frags script``)."""
    with open(path) as f:
        code = f.read()
    return (engine or JavascriptEngine()).run(code, args, runner)
