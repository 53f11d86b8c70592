# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration for the frags CLI and web server.

Settings live in a ``.env`` style file (``./.env`` unless FRAGS_CONFIG_FILE
points elsewhere). Environment variables with the same name win over the
file. A missing file is replaced by a commented template the user must fill
in before running again.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from dotenv import dotenv_values

from frags.errors import ConfigError


logger = logging.getLogger(__name__)

CONFIG_FILE_ENV = "FRAGS_CONFIG_FILE"
DEFAULT_CONFIG_FILE = ".env"

CONFIG_TEMPLATE = """\
# frags configuration
# Model id as understood by the `llm` library (e.g. gpt-4o-mini, gemini-2.0-flash)
MODEL=
# API key for the model provider (leave empty to use keys stored by `llm keys set`)
API_KEY=
# Sessions run in parallel
PARALLEL_WORKERS=1
# Generation settings (empty = provider default)
TEMPERATURE=
TOP_P=
TOP_K=
MAX_TOKENS=
# Seconds before a run is cancelled
RUN_TIMEOUT=900
MAX_TOOL_ROUND_TRIPS=16
# Render tool and context blocks as markdown instead of JSON
USE_K_FORMAT=false
# Directory searched by `frags web run` and the MCP server
PLANS_DIR=./plans
# Require this value in the x-api-key header (empty = no check)
WEB_API_KEY=
EVENT_BUFFER=1000
LOG_LEVEL=INFO
"""


@dataclass
class Settings:
    """Typed view of the configuration file."""
    model: str = ""
    api_key: str = ""
    parallel_workers: int = 1
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None
    run_timeout: float = 900.0
    max_tool_round_trips: int = 16
    use_k_format: bool = False
    plans_dir: str = "./plans"
    web_api_key: str = ""
    event_buffer: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Optional[str]]) -> "Settings":
        """Build settings from ``KEY=value`` pairs.

        Raises:
            ConfigError: If a value cannot be converted
        """
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            raw = values.get(f.name.upper())
            if raw is None or str(raw).strip() == "":
                continue
            kwargs[f.name] = _convert(f.name.upper(), str(raw).strip(), f.default)
        settings = cls(**kwargs)
        if settings.parallel_workers < 1:
            raise ConfigError("PARALLEL_WORKERS must be at least 1")
        return settings

    def generation_options(self) -> Dict[str, Any]:
        """Generation settings that were explicitly configured."""
        options = {
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
        }
        return {k: v for k, v in options.items() if v is not None}


def _convert(key: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        if raw.lower() in ("true", "1", "yes", "on"):
            return True
        if raw.lower() in ("false", "0", "no", "off"):
            return False
        raise ConfigError(f"{key} must be a boolean, got {raw!r}")
    try:
        if isinstance(default, int) or key in ("TOP_K", "MAX_TOKENS"):
            return int(raw)
        if isinstance(default, float) or key in ("TEMPERATURE", "TOP_P"):
            return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")
    return raw


def config_path(path: Optional[Union[str, Path]] = None) -> Path:
    """Resolve the configuration file path."""
    if path:
        return Path(path).expanduser()
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)).expanduser()


def write_template(path: Union[str, Path]) -> Path:
    """Write the commented configuration template to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(CONFIG_TEMPLATE)
    return path


def load_settings(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Load settings from the config file, then apply environment overrides.

    Args:
        path: Config file (default: FRAGS_CONFIG_FILE or ./.env)
        environ: Environment to read overrides from (default: os.environ)

    Returns:
        Settings

    Raises:
        ConfigError: If the file is missing (a template is written) or invalid
    """
    path = config_path(path)
    if not path.exists():
        write_template(path)
        raise ConfigError(
            f"Configuration file not found. A template was written to {path}; "
            f"fill it in and run again."
        )

    values: Dict[str, Optional[str]] = dict(dotenv_values(path))
    env = os.environ if environ is None else environ
    for key in (f.name.upper() for f in fields(Settings)):
        if key in env:
            values[key] = env[key]

    settings = Settings.from_mapping(values)
    logger.debug(f"Loaded configuration from {path}")
    return settings
