# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Error kinds for frags.

Every error raised out of a run is a FragsError. The ``kind`` attribute is the
stable machine-readable category used by the CLI and the web tier.
"""

from typing import Optional


class FragsError(Exception):
    """Base class for all frags errors."""

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(FragsError):
    """Raised when settings are missing or malformed."""

    kind = "config"


class PlanParseError(FragsError):
    """Raised when a plan (YAML or schema) cannot be understood."""

    kind = "plan-parse"


class TemplateError(PlanParseError):
    """Raised when a template or expression fails to compile or render."""
    pass


class SchemaValidationError(FragsError):
    """Raised when data does not satisfy a schema.

    Attributes:
        path: Dotted location of the offending value (e.g. ``a.b[2].c``)
        reason: What was wrong with it
    """

    kind = "schema-validation"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if path else reason)


class ResourceError(FragsError):
    """Raised when a resource is missing or cannot be decoded."""

    kind = "resource"


class ToolError(FragsError):
    """Raised when a function invocation fails.

    Tool errors are normally reported back to the model. ``fatal`` ones abort
    the run instead.
    """

    kind = "tool"

    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message)
        self.fatal = fatal


class AiError(FragsError):
    """Raised when the model fails after retries or loops on tool calls."""

    kind = "ai"


class RunCancelled(FragsError):
    """Raised when the run was cancelled or timed out."""

    kind = "cancelled"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "run cancelled")


class TransformError(FragsError):
    """Raised when a transformer fails."""

    kind = "internal"


class InternalError(FragsError):
    """Raised on invariant violations."""
    pass
