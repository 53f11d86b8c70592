"""Ai adapter backed by the llm library.

One LlmAi instance owns one llm conversation. Function calls requested by the
model are executed through the shared tool loop and fed back as
llm.ToolResult objects.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from frags.ai import DEFAULT_MAX_ROUND_TRIPS, FunctionCall, FunctionResult, ModelReply, run_tool_loop
from frags.context import RunContext
from frags.errors import AiError
from frags.functions import FunctionRegistry, RunnerHandle
from frags.resources import ResourceData
from frags.schemas.json_schema import Schema
from frags.schemas.plan import ToolDefinition

# Import guard: llm is an optional dependency
_LLM_AVAILABLE = False
try:
    import llm as _llm

    _LLM_AVAILABLE = True
except ImportError:
    _llm = None


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


def _require_llm() -> None:
    """Raise clear error if llm library not installed."""
    if not _LLM_AVAILABLE:
        raise ImportError(
            "llm library not installed. Install with: pip install 'frags[llm]'"
        )


def _tool_output(output: Dict[str, Any]) -> str:
    return json.dumps(output, default=str)


class LlmAi:
    """Conversation with an llm model."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        max_round_trips: int = DEFAULT_MAX_ROUND_TRIPS,
    ):
        """
        Initialize the adapter.

        Args:
            model: llm model id (default: gpt-4o-mini)
            api_key: Key passed to the model, else llm's stored keys are used
            options: Generation options (temperature, top_p, ...)
            max_round_trips: Tool-call round-trips allowed per ask
        """
        _require_llm()
        self.model_name = model or DEFAULT_MODEL
        self.api_key = api_key or None
        self.options = dict(options or {})
        self.max_round_trips = max_round_trips
        self.system_prompt: Optional[str] = None
        self.functions = FunctionRegistry()
        self._model = _llm.get_model(self.model_name)
        self._conversation = self._model.conversation()
        self._system_sent = False

    def new(self) -> "LlmAi":
        fresh = LlmAi(
            model=self.model_name,
            api_key=self.api_key,
            options=self.options,
            max_round_trips=self.max_round_trips,
        )
        fresh.system_prompt = self.system_prompt
        fresh.functions = self.functions
        return fresh

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt

    def set_functions(self, functions: FunctionRegistry) -> None:
        self.functions = functions

    # =========================================================================
    # Ask
    # =========================================================================

    def ask(
        self,
        ctx: RunContext,
        text: str,
        schema: Optional[Schema],
        tools: Sequence[ToolDefinition],
        runner: Optional[RunnerHandle],
        *resources: ResourceData,
    ) -> str:
        """Send ``text`` and return the final reply once tool calls are settled."""
        llm_tools = self._tools()
        payload_schema = schema.to_dict(strip_extensions=True) if schema is not None else None
        attachments = [
            _llm.Attachment(content=r.content if isinstance(r.content, bytes) else r.text().encode(), type=r.media_type)
            for r in resources
        ]

        def send(results: List[FunctionResult]) -> ModelReply:
            kwargs: Dict[str, Any] = dict(self.options)
            if llm_tools:
                kwargs["tools"] = llm_tools
            if payload_schema is not None:
                kwargs["schema"] = payload_schema
            if self.api_key:
                kwargs["key"] = self.api_key
            if results:
                kwargs["tool_results"] = [
                    _llm.ToolResult(name=r.call.name, output=_tool_output(r.output), tool_call_id=r.call.id)
                    for r in results
                ]
                prompt_text = None
            else:
                prompt_text = text
                if attachments:
                    kwargs["attachments"] = attachments
                if self.system_prompt and not self._system_sent:
                    kwargs["system"] = self.system_prompt
                    self._system_sent = True
            try:
                response = self._conversation.prompt(prompt_text, **kwargs)
                reply_text = response.text()
                calls = [
                    FunctionCall(name=c.name, args=c.arguments or {}, id=c.tool_call_id)
                    for c in response.tool_calls()
                ]
            except Exception as e:
                raise AiError(f"{self.model_name}: {e}") from e
            logger.debug(f"{self.model_name} replied ({len(reply_text)} chars, {len(calls)} calls)")
            return ModelReply(text=reply_text, calls=calls)

        return run_tool_loop(send, self.functions, runner, ctx, self.max_round_trips)

    def _tools(self) -> List[Any]:
        """Describe registry functions as llm.Tool; execution stays in the tool loop."""
        tools = []
        for function in self.functions:
            schema = function.input_schema.to_dict(strip_extensions=True) if function.input_schema else {
                "type": "object", "properties": {},
            }
            tools.append(_llm.Tool(
                name=function.name,
                description=function.description,
                input_schema=schema,
                implementation=None,
            ))
        return tools
