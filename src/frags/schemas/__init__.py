# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Frags plan and JSON schemas."""

from frags.schemas.json_schema import DEFAULT_SESSION, Schema
from frags.schemas.plan import (
    Dependency,
    Plan,
    PreCall,
    RequiredTool,
    Resource,
    Session,
    ToolDefinition,
    Transformer,
)
from frags.schemas.validator import is_valid, validate

__all__ = [
    "DEFAULT_SESSION",
    "Schema",
    "Dependency",
    "Plan",
    "PreCall",
    "RequiredTool",
    "Resource",
    "Session",
    "ToolDefinition",
    "Transformer",
    "is_valid",
    "validate",
]
