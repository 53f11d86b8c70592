"""Shared fixtures: a scripted Ai that never touches the network.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import threading
from typing import Any, Callable, Dict, List, Optional

import pytest

from frags.ai import FunctionCall, ModelReply, run_tool_loop
from frags.functions import FunctionRegistry


class ScriptedAi:
    """Ai fake replaying canned replies.

    Replies are taken from a queue shared by every instance created with
    ``new()``, or produced by ``handler(text, schema, results)`` when given.
    A reply may be a str, a dict/list (sent as JSON), a ModelReply, or an
    exception to raise.
    """

    def __init__(
        self,
        replies: Optional[List[Any]] = None,
        handler: Optional[Callable[..., Any]] = None,
        max_round_trips: int = 16,
    ):
        self.replies = list(replies or [])
        self.handler = handler
        self.max_round_trips = max_round_trips
        self.calls: List[Dict[str, Any]] = []
        self.instances: List["ScriptedAi"] = [self]
        self.system_prompt: Optional[str] = None
        self.functions = FunctionRegistry()
        self._lock = threading.Lock()

    def new(self) -> "ScriptedAi":
        child = ScriptedAi(handler=self.handler, max_round_trips=self.max_round_trips)
        child.replies = self.replies
        child.calls = self.calls
        child.instances = self.instances
        child._lock = self._lock
        child.system_prompt = self.system_prompt
        child.functions = self.functions
        with self._lock:
            self.instances.append(child)
        return child

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt

    def set_functions(self, functions: FunctionRegistry) -> None:
        self.functions = functions

    def ask(self, ctx, text, schema, tools, runner, *resources) -> str:
        with self._lock:
            self.calls.append({
                "text": text,
                "schema": schema.to_dict(strip_extensions=True) if schema is not None else None,
                "resources": [r.identifier for r in resources],
                "system": self.system_prompt,
                "functions": self.functions.names(),
            })

        def send(results):
            reply = self._next(text, schema, results)
            if isinstance(reply, Exception):
                raise reply
            if isinstance(reply, ModelReply):
                return reply
            if isinstance(reply, (dict, list)):
                return ModelReply(text=json.dumps(reply))
            return ModelReply(text=reply)

        return run_tool_loop(send, self.functions, runner, ctx, self.max_round_trips)

    def _next(self, text, schema, results):
        if self.handler is not None:
            return self.handler(text, schema, results)
        with self._lock:
            if not self.replies:
                raise AssertionError(f"no scripted reply left for prompt: {text!r}")
            return self.replies.pop(0)


def call_reply(name: str, **args: Any) -> ModelReply:
    """A model reply requesting one function call."""
    return ModelReply(calls=[FunctionCall(name=name, args=args, id=f"call-{name}")])


@pytest.fixture
def scripted_ai():
    """Factory for ScriptedAi instances."""
    return ScriptedAi
