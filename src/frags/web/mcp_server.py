# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
MCP server - expose plans as MCP tools.

Tools:
    frags_list_plans()                    names of the plans in PLANS_DIR
    frags_run_plan(name, parameters)      run a plan, return its progress map

Served over streamable HTTP by ``frags web mcp``.
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import anyio.to_thread

from frags.ai import Ai
from frags.config import Settings
from frags.context import RunContext
from frags.events import StreamerLogger
from frags.executor import build_ai, execute
from frags.resources import FileResourceLoader
from frags.tools import ToolsConfig
from frags.web.app import list_plans, load_named_plan

# Import guard: the MCP SDK is an optional dependency
_MCP_AVAILABLE = False
try:
    from mcp.server.fastmcp import FastMCP

    _MCP_AVAILABLE = True
except ImportError:
    FastMCP = None


logger = logging.getLogger(__name__)


def _require_mcp() -> None:
    """Raise clear error if the MCP SDK is not installed."""
    if not _MCP_AVAILABLE:
        raise ImportError(
            "mcp library not installed. Install with: pip install 'frags[mcp]'"
        )


def run_named_plan(
    settings: Settings,
    name: str,
    parameters: Optional[Dict[str, Any]] = None,
    ai_factory: Optional[Callable[[], Ai]] = None,
    tools_config: Optional[ToolsConfig] = None,
) -> Dict[str, Any]:
    """Run ``<PLANS_DIR>/<name>.yaml``; resources resolve relative to PLANS_DIR."""
    sm = load_named_plan(settings, name)
    ai = ai_factory() if ai_factory else build_ai(settings)
    return execute(
        RunContext(timeout_s=settings.run_timeout),
        sm,
        parameters or {},
        tools_config,
        FileResourceLoader(settings.plans_dir),
        StreamerLogger(logger),
        settings=settings,
        ai=ai,
        loose_params=False,
    )


class ApiKeyMiddleware:
    """ASGI middleware rejecting HTTP requests without the right x-api-key."""

    def __init__(self, app, api_key: str):
        self.app = app
        self.api_key = api_key.encode()

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and self.api_key:
            headers = dict(scope.get("headers") or [])
            if headers.get(b"x-api-key") != self.api_key:
                await send({
                    "type": "http.response.start",
                    "status": 401,
                    "headers": [(b"content-type", b"application/json")],
                })
                await send({"type": "http.response.body", "body": b'{"error": "invalid or missing x-api-key"}'})
                return
        await self.app(scope, receive, send)


def create_mcp_server(
    settings: Settings,
    ai_factory: Optional[Callable[[], Ai]] = None,
    tools_config: Optional[ToolsConfig] = None,
):
    """FastMCP server exposing frags_list_plans and frags_run_plan."""
    _require_mcp()
    server = FastMCP("frags")

    @server.tool()
    def frags_list_plans() -> List[str]:
        """List the plans that can be run."""
        return list_plans(settings)

    @server.tool()
    async def frags_run_plan(name: str, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a plan by name and return its structured result."""
        # blocking run, kept off the event loop
        return await anyio.to_thread.run_sync(
            partial(run_named_plan, settings, name, parameters, ai_factory, tools_config)
        )

    return server


def create_mcp_app(
    settings: Settings,
    ai_factory: Optional[Callable[[], Ai]] = None,
    tools_config: Optional[ToolsConfig] = None,
):
    """ASGI app serving the MCP server over streamable HTTP."""
    app = create_mcp_server(settings, ai_factory, tools_config).streamable_http_app()
    if settings.web_api_key:
        return ApiKeyMiddleware(app, settings.web_api_key)
    return app
