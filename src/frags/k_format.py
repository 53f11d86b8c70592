# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""K-format: a markdown flavour for showing structured data to a model.

Maps are rendered with sorted keys, lists with explicit indexes and scalars
with their type, so the model sees the same shape every time.
"""

import dataclasses
from typing import Any


def to_k_format(value: Any) -> str:
    """Render ``value`` in K-format."""
    return _render(value, 0)


def _render(value: Any, depth: int) -> str:
    indent = "  " * depth

    if value is None:
        return "`<NULL>`"

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        lines = [
            f"{indent}- **{f.name}**: {_render(getattr(value, f.name), depth + 1)}"
            for f in dataclasses.fields(value)
        ]
        return "\n" + "\n".join(lines)

    if isinstance(value, dict):
        if not value:
            return "(empty)"
        lines = []
        for key in sorted(value, key=str):
            if value[key] is None:
                continue
            lines.append(f"{indent}- **{key}**: {_render(value[key], depth + 1)}")
        return "\n" + "\n".join(lines)

    if isinstance(value, (bytes, bytearray)):
        return f"`(bytes)` {list(value)}"

    if isinstance(value, (list, tuple)):
        if not value:
            return "(empty)"
        lines = [f"{indent}- [{i}] {_render(item, depth + 1)}" for i, item in enumerate(value)]
        return "\n" + "\n".join(lines)

    if isinstance(value, str):
        return f'`(string)` "{value}"'
    if isinstance(value, bool):
        return f"`(bool)` {'true' if value else 'false'}"
    if isinstance(value, int):
        return f"`(int)` {value}"
    if isinstance(value, float):
        text = repr(value)
        if value.is_integer() and abs(value) < 1e21:
            text = str(int(value))
        return f"`(float)` {text}"
    return f"`({type(value).__name__})` {value}"
