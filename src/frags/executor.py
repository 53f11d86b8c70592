# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Executor - run a plan with configured tools and render the result.

``execute`` is the one path shared by the CLI, the web server and the MCP
server: it connects tools, builds the runner and returns the progress map.
"""

import json
import logging
from typing import Any, Dict, Optional

import yaml

from frags.ai import Ai
from frags.config import Settings
from frags.context import RunContext
from frags.errors import ConfigError
from frags.evaluator import render_data
from frags.events import StreamerLogger
from frags.resources import ResourceLoader
from frags.runner import Runner
from frags.scripting import ScriptEngine, default_engine
from frags.session_manager import SessionManager
from frags.tools import ToolsConfig, connect_tools


logger = logging.getLogger(__name__)

FORMATS = ("yaml", "json", "template")


def build_ai(settings: Settings) -> Ai:
    """The default model adapter for ``settings``."""
    from frags.adapters.llm_ai import LlmAi

    return LlmAi(
        model=settings.model or None,
        api_key=settings.api_key or None,
        options=settings.generation_options(),
        max_round_trips=settings.max_tool_round_trips,
    )


def execute(
    ctx: Optional[RunContext],
    sm: SessionManager,
    params: Optional[Dict[str, Any]],
    tools_config: Optional[ToolsConfig],
    loader: ResourceLoader,
    streamer: Optional[StreamerLogger] = None,
    settings: Optional[Settings] = None,
    ai: Optional[Ai] = None,
    script_engine: Optional[ScriptEngine] = None,
    loose_params: bool = True,
) -> Dict[str, Any]:
    """
    Execute a plan.

    Args:
        ctx: Run context (default: one bounded by settings.run_timeout)
        sm: Session manager holding the compiled plan
        params: Plan parameters
        tools_config: MCP servers and collections to expose
        loader: Resource loader
        streamer: Event emitter
        settings: Runtime settings (workers, k-format, model)
        ai: Model adapter (default: built from settings)
        script_engine: Script engine (default: QuickJS when installed)
        loose_params: Accept string params for numeric/boolean schemas

    Returns:
        Progress map
    """
    settings = settings or Settings()
    ctx = ctx or RunContext(timeout_s=settings.run_timeout)
    streamer = streamer or StreamerLogger(logger)
    sm.set_loose_params(loose_params)

    if ai is None:
        ai = build_ai(settings)

    with connect_tools(tools_config or ToolsConfig()) as tools:
        runner = Runner(
            sm,
            loader,
            ai,
            functions=tools.registry,
            workers=settings.parallel_workers,
            events=streamer,
            script_engine=script_engine or default_engine(),
            use_k_format=settings.use_k_format,
        )
        ai.set_functions(tools.registry)
        return runner.run(params or {}, ctx)


def render_result(result: Dict[str, Any], format_type: str = "yaml", template: Optional[str] = None) -> str:
    """
    Render a progress map for output.

    Args:
        result: Progress map
        format_type: yaml, json or template
        template: Template text (required for ``template``)

    Raises:
        ConfigError: Unknown format or missing template
    """
    if format_type == "yaml":
        return yaml.safe_dump(result, sort_keys=False, allow_unicode=True)
    if format_type == "json":
        return json.dumps(result, indent=2, default=str)
    if format_type == "template":
        if not template:
            raise ConfigError("the template format needs a template (-t)")
        return render_data(template, result)
    raise ConfigError(f"unknown format '{format_type}' (expected one of: {', '.join(FORMATS)})")
