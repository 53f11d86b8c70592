# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Tools file and function wiring.

The tools file (``tools.json``) declares MCP servers and local collections:

    {
      "mcpServers": {"weather": {"command": "weather-mcp", "args": []}},
      "collections": {"fs": {"params": {"base_path": "./data"}}, "http": {}}
    }

Unknown keys are ignored. A missing file means no tools.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from frags.errors import ConfigError
from frags.functions import Function, FunctionRegistry, RunnerHandle
from frags.mcp import McpServerConfig, McpTools
from frags.schemas.json_schema import Schema
from frags_functions import COLLECTIONS
from frags_functions import fs as fs_functions
from frags_functions import http as http_functions
from frags_functions import postgres as postgres_functions


logger = logging.getLogger(__name__)

DEFAULT_TOOLS_FILE = "tools.json"


@dataclass
class CollectionConfig:
    disabled: bool = False
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolsConfig:
    """Parsed tools file."""
    mcp_servers: Dict[str, McpServerConfig] = field(default_factory=dict)
    collections: Dict[str, CollectionConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ToolsConfig":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("tools config must be an object")
        servers = {
            name: McpServerConfig.from_dict(name, cfg)
            for name, cfg in (data.get("mcpServers") or {}).items()
        }
        collections = {}
        for name, cfg in (data.get("collections") or {}).items():
            cfg = cfg or {}
            if name not in COLLECTIONS:
                logger.warning(f"Ignoring unknown collection '{name}' (known: {', '.join(COLLECTIONS)})")
                continue
            collections[name] = CollectionConfig(
                disabled=bool(cfg.get("disabled", False)),
                params=dict(cfg.get("params") or {}),
            )
        return cls(mcp_servers=servers, collections=collections)

    @classmethod
    def from_json(cls, text: str) -> "ToolsConfig":
        try:
            return cls.from_dict(json.loads(text or "{}"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"invalid tools file: {e}")


def read_tools_file(path: Union[str, Path] = DEFAULT_TOOLS_FILE) -> ToolsConfig:
    """Read the tools file; a missing file is an empty config."""
    path = Path(path).expanduser()
    if not path.exists():
        logger.debug(f"No tools file at {path}")
        return ToolsConfig()
    return ToolsConfig.from_json(path.read_text())


# =============================================================================
# Collections
# =============================================================================

def _bind(name: str, spec: Dict[str, Any], call: Callable[[Dict[str, Any]], Any], collection: str) -> Function:
    def invoke(args: Dict[str, Any], runner: Optional[RunnerHandle] = None) -> Any:
        return call(args)

    return Function(
        name=name,
        func=invoke,
        description=spec["description"],
        input_schema=Schema.from_dict(spec["input_schema"]),
        collection=collection,
    )


def collection_functions(
    name: str, params: Dict[str, Any], closers: Optional[List[Callable[[], None]]] = None
) -> List[Function]:
    """
    Functions contributed by one local collection.

    Args:
        name: fs, http or postgres
        params: Collection params from the tools file
        closers: Receives callables releasing connections the collection opened

    Returns:
        Bound functions
    """
    if name == "fs":
        base_path = params.get("base_path")
        calls = {
            "fs_list_files": lambda a: fs_functions.list_files(a["path"], base_path),
            "fs_read_file": lambda a: fs_functions.read_file(a["path"], base_path),
            "fs_write_file": lambda a: fs_functions.write_file(a["path"], a["content"], base_path),
        }
        specs = fs_functions.FUNCTIONS
    elif name == "http":
        timeout = float(params.get("timeout", http_functions.DEFAULT_TIMEOUT))
        calls = {
            "http_request": lambda a: http_functions.request(
                a["method"], a["url"], headers=a.get("headers"), body=a.get("body"), timeout=timeout
            ),
        }
        specs = http_functions.FUNCTIONS
    elif name == "postgres":
        url = params.get("postgres_url")
        if not url:
            raise ConfigError("collection 'postgres' needs params.postgres_url")
        conn = postgres_functions.connect(url)
        if closers is not None:
            closers.append(conn.close)
        calls = {"postgres_query": lambda a: postgres_functions.query(conn, a["sql"])}
        specs = postgres_functions.FUNCTIONS
    else:
        raise ConfigError(f"unknown collection '{name}'")
    return [_bind(fname, specs[fname], call, name) for fname, call in calls.items()]


# =============================================================================
# Wiring
# =============================================================================

class ConnectedTools:
    """A registry plus the live connections backing it."""

    def __init__(self, registry: FunctionRegistry, mcp: McpTools, closers: Optional[List[Callable[[], None]]] = None):
        self.registry = registry
        self.mcp = mcp
        self.closers = closers or []

    def close(self) -> None:
        for close in self.closers:
            try:
                close()
            except Exception as e:
                logger.warning(f"Failed to close collection connection: {e}")
        self.mcp.close()

    def __enter__(self) -> "ConnectedTools":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def connect_tools(config: ToolsConfig, extra: Optional[List[Function]] = None) -> ConnectedTools:
    """
    Connect MCP servers and bind collections into one registry.

    Raises:
        ConfigError: Bad collection params
        ToolError: MCP server unreachable
    """
    registry = FunctionRegistry()
    mcp = McpTools(list(config.mcp_servers.values()))
    closers: List[Callable[[], None]] = []
    mcp.connect()
    try:
        registry.extend(mcp.as_functions())
        for name, collection in config.collections.items():
            if collection.disabled:
                continue
            registry.extend(collection_functions(name, collection.params, closers))
    except Exception:
        ConnectedTools(registry, mcp, closers).close()
        raise
    registry.extend(extra or [])
    logger.info(f"Available functions: {', '.join(registry.names()) or '(none)'}")
    return ConnectedTools(registry, mcp, closers)
