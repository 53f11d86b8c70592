# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
MCP client - import tools from MCP servers as functions.

Each configured server gets a long-lived session running on one background
asyncio loop. Session workers call tools synchronously; calls are scheduled
onto the loop and waited for with the run's remaining time.
"""

import asyncio
import json
import logging
import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from frags.errors import ConfigError, ToolError
from frags.functions import MCP_SEPARATOR, Function, RunnerHandle
from frags.schemas.json_schema import Schema

# Import guard: the MCP SDK is an optional dependency
_MCP_AVAILABLE = False
try:
    from mcp import ClientSession, StdioServerParameters
    from mcp.client.sse import sse_client
    from mcp.client.stdio import stdio_client
    from mcp.client.streamable_http import streamablehttp_client

    _MCP_AVAILABLE = True
except ImportError:
    ClientSession = None


logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 30
CALL_TIMEOUT_S = 300


def _require_mcp() -> None:
    """Raise clear error if the MCP SDK is not installed."""
    if not _MCP_AVAILABLE:
        raise ImportError(
            "mcp library not installed. Install with: pip install 'frags[mcp]'"
        )


@dataclass
class McpServerConfig:
    """One entry of ``mcpServers`` in the tools file."""
    name: str
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    url: Optional[str] = None
    transport: str = "http"
    headers: Dict[str, str] = field(default_factory=dict)
    disabled: bool = False

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "McpServerConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"mcpServers.{name} must be an object")
        if not data.get("command") and not data.get("url"):
            raise ConfigError(f"mcpServers.{name} needs a 'command' or a 'url'")
        transport = data.get("transport") or data.get("type") or ("stdio" if data.get("command") else "http")
        if transport == "streamable-http":
            transport = "http"
        if transport not in ("stdio", "sse", "http"):
            raise ConfigError(f"mcpServers.{name}: unknown transport '{transport}'")
        return cls(
            name=name,
            command=data.get("command"),
            args=list(data.get("args") or []),
            env=data.get("env"),
            cwd=data.get("cwd"),
            url=data.get("url"),
            transport=transport,
            headers=dict(data.get("headers") or {}),
            disabled=bool(data.get("disabled", False)),
        )


def convert_result(result: Any) -> Dict[str, Any]:
    """Turn a CallToolResult into a function output mapping.

    Structured content wins. Otherwise text parts are joined and decoded as
    JSON when possible.

    Raises:
        ToolError: If the server flagged the call as an error
    """
    texts = [getattr(part, "text", "") for part in (result.content or []) if getattr(part, "type", "") == "text"]
    if getattr(result, "isError", False):
        raise ToolError("\n".join(texts) or "MCP tool reported an error")
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured if isinstance(structured, dict) else {"result": structured}
    text = "\n".join(texts)
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return {"result": text}
    return decoded if isinstance(decoded, dict) else {"result": decoded}


class McpTools:
    """Connections to every enabled MCP server of a tools file."""

    def __init__(self, servers: List[McpServerConfig]):
        self.servers = [s for s in servers if not s.disabled]
        self.sessions: Dict[str, Any] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._closers: Dict[str, asyncio.Event] = {}
        self._tasks: List[Any] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """Start the loop and open a session per server.

        Raises:
            ToolError: If a server cannot be reached
        """
        if not self.servers:
            return
        _require_mcp()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="frags-mcp", daemon=True)
        self._thread.start()
        for server in self.servers:
            ready = self._submit(self._open(server)).result(timeout=CONNECT_TIMEOUT_S)
            logger.info(f"Connected to MCP server {server.name} via {ready}")

    def close(self) -> None:
        if self._loop is None:
            return
        for event in self._closers.values():
            self._loop.call_soon_threadsafe(event.set)
        for task in self._tasks:
            try:
                task.result(timeout=5)
            except Exception as e:
                logger.warning(f"MCP session did not close cleanly: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._loop = None
        self.sessions.clear()

    def __enter__(self) -> "McpTools":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # =========================================================================
    # Functions
    # =========================================================================

    def as_functions(self) -> List[Function]:
        """List every server's tools as ``<server>__<tool>`` functions."""
        functions = []
        for name, session in self.sessions.items():
            listing = self._submit(session.list_tools()).result(timeout=CONNECT_TIMEOUT_S)
            for tool in listing.tools:
                functions.append(Function(
                    name=f"{name}{MCP_SEPARATOR}{tool.name}",
                    func=self._caller(name, tool.name),
                    description=tool.description or "",
                    input_schema=Schema.from_dict(tool.inputSchema) if tool.inputSchema else None,
                    collection=name,
                ))
            logger.debug(f"MCP server {name} exposes {len(listing.tools)} tools")
        return functions

    def call(self, server: str, tool: str, args: Dict[str, Any], timeout: float = CALL_TIMEOUT_S) -> Dict[str, Any]:
        session = self.sessions.get(server)
        if session is None:
            raise ToolError(f"MCP server not connected: {server}")
        result = self._submit(session.call_tool(tool, arguments=args)).result(timeout=timeout)
        return convert_result(result)

    def _caller(self, server: str, tool: str):
        def invoke(args: Dict[str, Any], runner: Optional[RunnerHandle] = None) -> Dict[str, Any]:
            return self.call(server, tool, args)
        return invoke

    # =========================================================================
    # Loop internals
    # =========================================================================

    def _submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def _open(self, server: McpServerConfig) -> str:
        ready: asyncio.Future = self._loop.create_future()
        closer = asyncio.Event()
        self._closers[server.name] = closer
        self._tasks.append(self._submit(self._serve(server, ready, closer)))
        return await ready

    async def _serve(self, server: McpServerConfig, ready: asyncio.Future, closer: asyncio.Event) -> None:
        """Own one session from open to close, inside a single task."""
        transport = server.transport
        try:
            async with AsyncExitStack() as stack:
                if transport == "stdio":
                    params = StdioServerParameters(
                        command=server.command, args=server.args, env=server.env, cwd=server.cwd
                    )
                    read, write = await stack.enter_async_context(stdio_client(params))
                elif transport == "sse":
                    read, write = await stack.enter_async_context(sse_client(server.url, headers=server.headers))
                else:
                    try:
                        read, write, _ = await stack.enter_async_context(
                            streamablehttp_client(server.url, headers=server.headers)
                        )
                    except Exception as e:
                        logger.info(f"Streamable HTTP failed for {server.name} ({e}), trying SSE")
                        transport = "sse"
                        read, write = await stack.enter_async_context(sse_client(server.url, headers=server.headers))
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                self.sessions[server.name] = session
                ready.set_result(transport)
                await closer.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(ToolError(f"cannot connect to MCP server {server.name}: {e}", fatal=True))
            else:
                raise
