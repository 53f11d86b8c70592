# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Resource loading for plan sessions.

Loaders fetch bytes by identifier. The run wraps its loader in a
CachingResourceLoader so each identifier is fetched at most once per run,
even when several sessions ask for it at the same time.
"""

import csv
import io
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml

from frags.errors import ResourceError


logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".json": "application/json",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
DEFAULT_MEDIA_TYPE = "text/plain"


def media_type_for(identifier: str) -> str:
    """Guess the media type of a resource from its extension."""
    return MEDIA_TYPES.get(Path(identifier).suffix.lower(), DEFAULT_MEDIA_TYPE)


@dataclass
class ResourceData:
    """A loaded resource."""
    identifier: str
    media_type: str
    content: bytes = b""
    # Decoded value when a transformer replaced the content with data.
    structured: Any = None
    params: Dict[str, Any] = field(default_factory=dict)

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def set_content(self, value: Any) -> None:
        """Replace content with bytes, text, or structured data."""
        if isinstance(value, (bytes, bytearray)):
            self.content = bytes(value)
            self.structured = None
        elif isinstance(value, str):
            self.content = value.encode("utf-8")
            self.structured = None
        else:
            self.structured = value
            self.content = json.dumps(value).encode("utf-8")
            self.media_type = "application/json"

    def decode(self) -> Any:
        """Decode into a plain value according to the media type.

        Raises:
            ResourceError: If the content does not parse
        """
        if self.structured is not None:
            return self.structured
        try:
            if self.media_type == "application/json":
                return json.loads(self.content)
            if self.media_type == "application/yaml":
                return yaml.safe_load(self.text())
            if self.media_type == "text/csv":
                return list(csv.DictReader(io.StringIO(self.text())))
        except (json.JSONDecodeError, yaml.YAMLError, csv.Error) as e:
            raise ResourceError(f"cannot decode resource {self.identifier}: {e}")
        if self.media_type.startswith("text/"):
            return self.text()
        raise ResourceError(f"resource {self.identifier} ({self.media_type}) cannot be decoded into vars")


class ResourceLoader(Protocol):
    def load(self, identifier: str, params: Optional[Dict[str, Any]] = None) -> ResourceData:
        ...


class FileResourceLoader:
    """Loads resources from files under ``base_path``."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).expanduser()

    def load(self, identifier: str, params: Optional[Dict[str, Any]] = None) -> ResourceData:
        path = Path(identifier).expanduser()
        if not path.is_absolute():
            path = self.base_path / path
        if not path.is_file():
            raise ResourceError(f"resource not found: {identifier}")
        logger.debug(f"Loading resource {identifier} from {path}")
        return ResourceData(
            identifier=identifier,
            media_type=media_type_for(identifier),
            content=path.read_bytes(),
            params=dict(params or {}),
        )


class BytesResourceLoader:
    """Serves resources from an in-memory ``name -> bytes`` mapping."""

    def __init__(self, resources: Optional[Dict[str, bytes]] = None):
        self.resources = dict(resources or {})

    def load(self, identifier: str, params: Optional[Dict[str, Any]] = None) -> ResourceData:
        if identifier not in self.resources:
            raise ResourceError(f"resource not found: {identifier}")
        return ResourceData(
            identifier=identifier,
            media_type=media_type_for(identifier),
            content=self.resources[identifier],
            params=dict(params or {}),
        )


class MultiResourceLoader:
    """Dispatches to a named loader chosen by the ``loader`` param."""

    def __init__(self, loaders: Dict[str, ResourceLoader], default: str):
        if default not in loaders:
            raise ValueError(f"default loader '{default}' is not registered")
        self.loaders = loaders
        self.default = default

    def load(self, identifier: str, params: Optional[Dict[str, Any]] = None) -> ResourceData:
        name = (params or {}).get("loader", self.default)
        if name not in self.loaders:
            raise ResourceError(f"unknown resource loader '{name}' for {identifier}")
        return self.loaders[name].load(identifier, params)


class CachingResourceLoader:
    """Single-flight cache over another loader for the duration of a run."""

    def __init__(self, inner: ResourceLoader):
        self.inner = inner
        self.loads = 0
        self._cache: Dict[str, ResourceData] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def load(self, identifier: str, params: Optional[Dict[str, Any]] = None) -> ResourceData:
        key = f"{(params or {}).get('loader', '')}:{identifier}"
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            if key not in self._cache:
                self._cache[key] = self.inner.load(identifier, params)
                self.loads += 1
            cached = self._cache[key]
        # callers may mutate content via transformers
        return ResourceData(
            identifier=cached.identifier,
            media_type=cached.media_type,
            content=cached.content,
            structured=cached.structured,
            params=dict(params or {}),
        )

    def release(self) -> None:
        """Drop everything cached; called at run end."""
        with self._guard:
            self._cache.clear()
            self._locks.clear()
