# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Ai contract - what the runner needs from a model adapter.

Adapters implement the Ai protocol. The tool-call loop is shared: an adapter
provides a ``send`` callable that pushes function results (empty on the first
turn) and returns the model's reply; ``run_tool_loop`` does the rest.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from frags.context import RunContext
from frags.errors import AiError, RunCancelled
from frags.functions import FunctionRegistry, RunnerHandle
from frags.resources import ResourceData
from frags.schemas.json_schema import Schema
from frags.schemas.plan import ToolDefinition


logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUND_TRIPS = 16


@dataclass
class FunctionCall:
    """A function call requested by the model."""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class FunctionResult:
    """Outcome of a FunctionCall, fed back to the model."""
    call: FunctionCall
    output: Dict[str, Any]


@dataclass
class ModelReply:
    """One model message: text and/or function calls."""
    text: str = ""
    calls: List[FunctionCall] = field(default_factory=list)


class Ai(Protocol):
    """Model-agnostic conversation with one transcript."""

    def new(self) -> "Ai":
        """Fresh instance with an empty transcript and the same settings."""
        ...

    def set_system_prompt(self, prompt: str) -> None:
        ...

    def set_functions(self, functions: FunctionRegistry) -> None:
        ...

    def ask(
        self,
        ctx: RunContext,
        text: str,
        schema: Optional[Schema],
        tools: Sequence[ToolDefinition],
        runner: Optional[RunnerHandle],
        *resources: ResourceData,
    ) -> str:
        """Send ``text`` and return the body of the final non-tool message."""
        ...


def run_tool_loop(
    send: Callable[[List[FunctionResult]], ModelReply],
    functions: FunctionRegistry,
    runner: Optional[RunnerHandle],
    ctx: RunContext,
    max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
) -> str:
    """Drive a conversation until the model stops calling functions.

    Args:
        send: Sends function results (empty on the first turn), returns the reply
        functions: Functions the model may call
        runner: Handle passed to each function
        ctx: Run context, checked before every request
        max_round_trips: Max times results may be sent back

    Returns:
        Text of the final message

    Raises:
        AiError: If the model is still calling functions after the bound
        RunCancelled: If the run was cancelled
    """
    results: List[FunctionResult] = []
    for round_trip in range(max_round_trips + 1):
        ctx.check()
        reply = send(results)
        if not reply.calls:
            return reply.text
        if round_trip == max_round_trips:
            break
        results = []
        for call in reply.calls:
            ctx.check()
            logger.debug(f"Model called {call.name} (round-trip {round_trip + 1})")
            results.append(FunctionResult(call=call, output=functions.invoke(call.name, call.args, runner)))
    raise AiError(f"model still calling functions after {max_round_trips} round-trips")


def is_retryable(error: Exception) -> bool:
    """Determine if error is transient and worth retrying."""
    if isinstance(error, RunCancelled):
        return False
    error_str = str(error).lower()
    retryable_patterns = [
        "rate limit",
        "429",
        "timeout",
        "503",
        "502",
        "500",
        "connection",
        "temporarily unavailable",
        "overloaded",
    ]
    return any(p in error_str for p in retryable_patterns)


def retry_with_backoff(
    func: Callable[[], Any],
    ctx: Optional[RunContext] = None,
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    sleep_func: Optional[Callable[[float], None]] = None,
) -> Any:
    """Execute function with retry on transient errors."""
    if sleep_func is not None:
        _sleep = sleep_func
    elif ctx is not None:
        _sleep = ctx.sleep
    else:
        _sleep = time.sleep
    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        if ctx is not None:
            ctx.check()
        try:
            return func()
        except Exception as e:
            last_error = e
            if not is_retryable(e) or attempt == max_retries:
                raise
            sleep_time = delay * (backoff**attempt)
            logger.warning(f"Transient failure ({e}), retrying in {sleep_time:.1f}s")
            _sleep(sleep_time)

    raise last_error  # Should never reach here, but satisfies type checker
