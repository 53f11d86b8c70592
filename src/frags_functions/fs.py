"""Filesystem functions for models.

Implementation rules enforced here (Rule 8):
- Never print
- Never read global config or environment (except Path.expanduser)
- Always return simple dicts
- Side effects: file IO only, confined to base_path when one is given

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["base_path/**"],
    "writes": ["base_path/**"],
    "external": [],
}

from pathlib import Path
from typing import Any, Dict, Optional


def _resolve(path: str, base_path: Optional[str]) -> Path:
    """Resolve ``path``, refusing to escape ``base_path``."""
    if not path:
        raise ValueError("path is required")
    if base_path is None:
        return Path(path).expanduser()
    base = Path(base_path).expanduser().resolve()
    target = (base / path).resolve()
    if target != base and base not in target.parents:
        raise PermissionError(f"path outside of {base}: {path}")
    return target


def list_files(path: str, base_path: Optional[str] = None) -> Dict[str, Any]:
    """List entries of a directory.

    Returns:
        {"files": [name, ...]} sorted, directories suffixed with "/"
    """
    directory = _resolve(path, base_path)
    if not directory.is_dir():
        raise NotADirectoryError(f"not a directory: {path}")
    files = sorted(
        entry.name + ("/" if entry.is_dir() else "")
        for entry in directory.iterdir()
    )
    return {"files": files}


def read_file(path: str, base_path: Optional[str] = None) -> Dict[str, Any]:
    """Read a text file.

    Returns:
        {"contents": text}
    """
    return {"contents": _resolve(path, base_path).read_text()}


def write_file(path: str, content: str, base_path: Optional[str] = None) -> Dict[str, Any]:
    """Write a text file, creating parent directories.

    Returns:
        {"path": path, "bytes": n}
    """
    target = _resolve(path, base_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    return {"path": str(target), "bytes": len(content.encode())}


FUNCTIONS: Dict[str, Dict[str, Any]] = {
    "fs_list_files": {
        "func": list_files,
        "description": "lists files in a provided directory",
        "input_schema": {
            "type": "object",
            "required": ["path"],
            "properties": {"path": {"type": "string"}},
        },
    },
    "fs_read_file": {
        "func": read_file,
        "description": "reads a file and returns its contents",
        "input_schema": {
            "type": "object",
            "required": ["path"],
            "properties": {"path": {"type": "string"}},
        },
    },
    "fs_write_file": {
        "func": write_file,
        "description": "writes a file with the provided contents",
        "input_schema": {
            "type": "object",
            "required": ["path", "content"],
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
        },
    },
}
