# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Runner - execute a plan.

Schedules sessions over the dependency DAG on a bounded worker pool. Each
session walks its phases in order, asking the model for exactly the slice of
the output schema that phase owns, validating the reply and merging it into
the progress map. A session with iterateOn makes that walk once per item.
"""

import json
import logging
import re
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from frags.ai import Ai, retry_with_backoff
from frags.context import RunContext
from frags.dependencies import DependencyGraph
from frags.errors import (
    AiError,
    FragsError,
    InternalError,
    PlanParseError,
    RunCancelled,
    SchemaValidationError,
)
from frags.evaluator import (
    EvalScope,
    env_scope,
    evaluate_array,
    evaluate_boolean,
    evaluate_map_values,
    render_schema,
    render_template,
)
from frags.events import (
    PHASE_END,
    PHASE_START,
    SESSION_END,
    SESSION_START,
    StreamerLogger,
)
from frags.functions import FunctionRegistry
from frags.k_format import to_k_format
from frags.progress import ProgressMap
from frags.resources import CachingResourceLoader, ResourceData, ResourceLoader
from frags.schemas.json_schema import Schema
from frags.schemas.plan import PreCall, Session
from frags.schemas.validator import validate
from frags.scripting import NoopScriptEngine, ScriptEngine
from frags.session_manager import SessionManager
from frags.transformers import TransformerPipeline


logger = logging.getLogger(__name__)

VALIDATION_HINT = (
    "your previous output failed validation: {reason}\n"
    "Reply again with a single JSON object that satisfies the schema."
)

_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_reply(text: str) -> Any:
    """Decode a model reply as JSON, tolerating a markdown code fence.

    Raises:
        SchemaValidationError: If the reply is not JSON
    """
    body = (text or "").strip()
    fenced = _FENCE_PATTERN.match(body)
    if fenced:
        body = fenced.group(1)
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise SchemaValidationError("", f"output is not valid JSON: {e.msg}")


class Runner:
    """Runs one plan; not re-entrant."""

    def __init__(
        self,
        session_manager: SessionManager,
        resource_loader: ResourceLoader,
        ai: Ai,
        functions: Optional[FunctionRegistry] = None,
        workers: int = 1,
        events: Optional[StreamerLogger] = None,
        script_engine: Optional[ScriptEngine] = None,
        use_k_format: bool = False,
        retry_delay: float = 5.0,
        env_prefix: str = "FRAGS_",
        sleep_func: Optional[Callable[[float], None]] = None,
    ):
        self.sm = session_manager
        self.loader = resource_loader
        self.ai = ai
        self.functions = functions or FunctionRegistry()
        self.workers = max(1, workers)
        self.events = events or StreamerLogger(logger)
        self.transformers = TransformerPipeline(script_engine or NoopScriptEngine(), runner=self)
        self.use_k_format = use_k_format
        self.retry_delay = retry_delay
        self.env_prefix = env_prefix
        self._sleep = sleep_func

        self.progress = ProgressMap()
        self.statuses: Dict[str, str] = {}
        self._params: Dict[str, Any] = {}
        self._schema: Optional[Schema] = None
        self._cache: Optional[CachingResourceLoader] = None
        self._ctx: Optional[RunContext] = None
        self._running = False
        self._guard = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def run(self, params: Optional[Dict[str, Any]] = None, ctx: Optional[RunContext] = None) -> Dict[str, Any]:
        """
        Run the plan and return the progress map.

        Args:
            params: Plan parameters
            ctx: Run context; defaults to a fresh one with a 15 minute deadline

        Returns:
            ``{session: {property: value}}``

        Raises:
            FragsError: The first error of any session; peers are cancelled
        """
        with self._guard:
            if self._running:
                raise InternalError("this runner is already running")
            self._running = True
        try:
            return self._run(params or {}, ctx or RunContext())
        finally:
            if self._cache is not None:
                self._cache.release()
            with self._guard:
                self._running = False

    def run_function(self, name: str, args: Dict[str, Any]) -> Any:
        """Call a registered function (used by scripts and tools)."""
        if self._ctx is not None:
            self._ctx.check()
        return self.functions.call(name, args, self)

    @property
    def resource_loads(self) -> int:
        return self._cache.loads if self._cache is not None else 0

    # =========================================================================
    # Setup and scheduling
    # =========================================================================

    def _run(self, params: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
        plan = self.sm.plan
        self._ctx = ctx
        self._params = params
        self.progress = ProgressMap()
        self.statuses = {name: "queued" for name in plan.sessions}

        self.sm.check_params(params)
        self._schema = self.sm.resolved_schema()
        self.sm.evaluate_vars(EvalScope(params=params, env=env_scope(self.env_prefix)))
        graph = DependencyGraph.from_plan(plan)
        self._check_required_tools()

        self._cache = CachingResourceLoader(self.loader)
        self.functions.on_input = self.transformers.function_input_hook(plan.transformers, self._scope)
        self.functions.on_output = self.transformers.function_output_hook(plan.transformers, self._scope)
        if plan.system_prompt:
            self.ai.set_system_prompt(render_template(plan.system_prompt, self._scope()))

        self.events.info("runner", "run started", sessions=len(plan.sessions), workers=self.workers)
        self._schedule(graph, ctx)
        self.events.info("runner", "run finished")
        return self.progress.snapshot()

    def _check_required_tools(self) -> None:
        for tool in self.sm.plan.required_tools:
            if tool.name in self.functions:
                continue
            if any(f.collection == tool.name for f in self.functions):
                continue
            raise PlanParseError(f"required tool not available: {tool.name} ({tool.type})")

    def _schedule(self, graph: DependencyGraph, ctx: RunContext) -> None:
        started: Set[str] = set()
        done: Set[str] = set()
        skipped: Set[str] = set()
        futures: Dict[Future, str] = {}
        first_error: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="frags-session") as pool:
            while True:
                if first_error is None:
                    try:
                        ready = self._dispatchable(graph, done, started, skipped)
                    except FragsError as e:
                        first_error = e
                        ctx.cancel(f"dependency check failed: {e}")
                        ready = []
                    for name in ready:
                        started.add(name)
                        self.statuses[name] = "committed"
                        futures[pool.submit(self._session_worker, name, ctx)] = name
                if not futures:
                    break

                timeout = None if first_error is not None else ctx.remaining()
                finished, _ = wait(list(futures), timeout=timeout, return_when=FIRST_COMPLETED)
                if not finished:
                    ctx.cancel("deadline exceeded")
                    first_error = first_error or RunCancelled("deadline exceeded")
                    continue
                for future in finished:
                    name = futures.pop(future)
                    error = future.exception()
                    if error is None:
                        done.add(name)
                        continue
                    if first_error is None:
                        first_error = error
                        ctx.cancel(f"session {name} failed: {error}")

        if first_error is not None:
            raise first_error

    def _dispatchable(self, graph: DependencyGraph, done: Set[str], started: Set[str], skipped: Set[str]) -> List[str]:
        """Ready sessions; marks (and skips past) sessions whose conditions fail."""
        while True:
            ready = graph.ready(done | skipped, started)
            runnable = []
            newly_skipped = False
            for name in ready:
                if graph.dependencies(name) & skipped or not self._conditions_hold(name):
                    started.add(name)
                    skipped.add(name)
                    self.statuses[name] = "noop"
                    self.events.info("runner", "session skipped", session=name)
                    newly_skipped = True
                else:
                    runnable.append(name)
            if not newly_skipped:
                return runnable

    def _conditions_hold(self, name: str) -> bool:
        session = self.sm.sessions[name]
        scope = self._scope()
        return all(
            evaluate_boolean(dep.expression, scope)
            for dep in session.depends_on
            if dep.expression
        )

    # =========================================================================
    # Session execution
    # =========================================================================

    def _session_worker(self, name: str, ctx: RunContext) -> None:
        self.statuses[name] = "running"
        self.events.progress(SESSION_START, name)
        try:
            self._run_session(name, ctx)
        except Exception as e:
            self.statuses[name] = "failed"
            self.events.error("session", f"session {name} failed", error=e, session=name)
            self.events.progress("error", name, error=str(e))
            if isinstance(e, FragsError):
                raise
            raise InternalError(f"session {name} failed: {e}") from e
        self.statuses[name] = "finished"
        self.events.progress(SESSION_END, name)

    def _run_session(self, name: str, run_ctx: RunContext) -> None:
        session = self.sm.sessions[name]
        ctx = run_ctx.child(session.timeout)
        local_vars = evaluate_map_values(session.vars, self._scope()) or {}

        resources = self._load_resources(session, local_vars)
        ai_resources = [data for res, data in resources if res.destination == "ai"]
        for res, data in resources:
            if res.destination == "vars":
                local_vars[res.var or Path(data.identifier).stem] = data.decode()

        phases: List[int] = []
        session_schema: Optional[Schema] = None
        if name in self._schema.get_session_ids():
            session_schema = self._schema.get_session(name)
            phases = session_schema.get_phase_indexes()

        if session.iterate_on is None:
            self._run_item(session, ctx, local_vars, ai_resources, session_schema, phases)
        else:
            items = evaluate_array(session.iterate_on, self._scope(local_vars))
            self.events.debug("session", "iterating", session=name, items=len(items))
            for index, item in enumerate(items):
                ctx.check()
                self._run_item(session, ctx, local_vars, ai_resources, session_schema, phases, item, index)

        self._transform(name, session.session_transformers(), local_vars)

    def _run_item(
        self,
        session: Session,
        ctx: RunContext,
        session_vars: Dict[str, Any],
        ai_resources: List[ResourceData],
        session_schema: Optional[Schema],
        phases: List[int],
        it: Any = None,
        index: Optional[int] = None,
    ) -> None:
        """One pass over the session's phases, on a fresh Ai transcript."""
        name = session.name
        local_vars = session_vars if index is None else dict(session_vars)
        ai = self.ai.new()
        if session.system_prompt:
            ai.set_system_prompt(render_template(session.system_prompt, self._scope(local_vars, it)))
        ai.set_functions(self.functions.select(session.tools))

        context_blocks = []
        for call in session.pre_calls:
            ctx.check()
            result = self._pre_call(call, local_vars, it)
            if call.destination == "vars":
                local_vars[call.var or call.name] = result
            else:
                context_blocks.append(self._call_block(call, result))
        prefix = "".join(context_blocks)
        if session.context:
            prefix = f"=== CURRENT CONTEXT ===\n{self._render_data(self.progress.snapshot())}\n===\n\n" + prefix

        if not phases:
            text = self._first_prompt(session, local_vars, prefix, it)
            if text.strip():
                self._ask(ai, ctx, session, text, None, ai_resources)
        extra = {} if index is None else {"iteration": index}
        for idx, phase in enumerate(phases):
            ctx.check()
            self.events.progress(PHASE_START, name, phase, **extra)
            scope = self._scope(local_vars, it)
            phase_schema = render_schema(session_schema.get_phase(phase), scope)
            if idx == 0:
                text = self._first_prompt(session, local_vars, prefix, it)
                data = self._ask_validated(ai, ctx, session, text, phase_schema, ai_resources)
            else:
                text = render_template(session.next_phase_prompt or session.prompt, scope)
                data = self._ask_validated(ai, ctx, session, text, phase_schema, [])
            if index is None:
                self.progress.merge(name, data, keys=phase_schema.properties)
            else:
                self.progress.append(name, data, keys=phase_schema.properties)
            self._transform(name, session.phase_transformers(phase), local_vars, it)
            self.events.progress(PHASE_END, name, phase, **extra)

    def _first_prompt(self, session: Session, local_vars: Dict[str, Any], prefix: str, it: Any = None) -> str:
        scope = self._scope(local_vars, it)
        parts = [render_template(p, scope) for p in session.pre_prompt]
        parts.append(render_template(session.prompt, scope))
        return prefix + "\n\n".join(p for p in parts if p)

    def _ask(
        self,
        ai: Ai,
        ctx: RunContext,
        session: Session,
        text: str,
        schema: Optional[Schema],
        resources: List[ResourceData],
    ) -> str:
        def make_call() -> str:
            return ai.ask(ctx, text, schema, session.tools, self, *resources)

        try:
            return retry_with_backoff(
                make_call,
                ctx=ctx,
                max_retries=session.attempts - 1,
                delay=self.retry_delay,
                sleep_func=self._sleep,
            )
        except FragsError:
            raise
        except Exception as e:
            raise AiError(f"model call failed: {e}") from e

    def _ask_validated(
        self,
        ai: Ai,
        ctx: RunContext,
        session: Session,
        text: str,
        schema: Schema,
        resources: List[ResourceData],
    ) -> Dict[str, Any]:
        reply = self._ask(ai, ctx, session, text, schema, resources)
        try:
            data = self._parse_and_validate(reply, schema)
        except SchemaValidationError as e:
            self.events.warning("ai", "output failed validation, asking again", session=session.name, error=str(e))
            hint = VALIDATION_HINT.format(reason=e)
            reply = self._ask(ai, ctx, session, hint, schema, [])
            data = self._parse_and_validate(reply, schema)
        if data is None:
            self.events.warning("ai", "empty reply, nothing merged", session=session.name)
            return {}
        return data

    def _parse_and_validate(self, reply: str, schema: Schema) -> Optional[Dict[str, Any]]:
        """Decoded and validated reply; None for an empty reply when nothing is required."""
        if not (reply or "").strip():
            if schema.required:
                raise SchemaValidationError("", f"empty reply, missing required properties: {', '.join(schema.required)}")
            return None
        data = parse_reply(reply)
        validate(data, schema)
        return data

    def _transform(self, name: str, transformers, local_vars: Dict[str, Any], it: Any = None) -> None:
        if not transformers:
            return
        scope = self._scope(local_vars, it)
        result = self.transformers.apply(transformers, self.progress.get(name), scope)
        self.progress.replace(name, result)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _scope(self, local_vars: Optional[Dict[str, Any]] = None, it: Any = None) -> EvalScope:
        scope = EvalScope(
            params=self._params,
            vars=dict(self.sm.vars),
            progress=self.progress.snapshot(),
            components={k: v.to_dict() for k, v in self.sm.plan.components.items()},
            env=env_scope(self.env_prefix),
            it=it,
        )
        if local_vars:
            scope = scope.with_vars(local_vars)
        return scope

    def _load_resources(self, session: Session, local_vars: Dict[str, Any]) -> List[Tuple[Any, ResourceData]]:
        loaded = []
        for resource in session.resources:
            scope = self._scope(local_vars)
            identifier = render_template(resource.identifier, scope)
            params = evaluate_map_values(resource.params, scope) or {}
            data = self._cache.load(identifier, params)
            if resource.media_type:
                data.media_type = resource.media_type
            data = self.transformers.transform_resource(self.sm.plan.transformers, data, scope)
            self.events.debug("session", "resource loaded", session=session.name, resource=identifier)
            loaded.append((resource, data))
        return loaded

    def _pre_call(self, call: PreCall, local_vars: Dict[str, Any], it: Any = None) -> Any:
        scope = self._scope(local_vars, it)
        args = evaluate_map_values(call.args, scope) or {}
        if call.code:
            return self.transformers.engine.run(call.code, args, self)
        return self.functions.call(call.name, args, self)

    def _call_block(self, call: PreCall, result: Any) -> str:
        description = f" - {call.description}" if call.description else ""
        return f"\n=== CALL: {call.name or 'code'}{description} ===\n{self._render_data(result)}\n===\n\n"

    def _render_data(self, data: Any) -> str:
        if self.use_k_format:
            return to_k_format(data)
        return json.dumps(data, indent=2, default=str)
