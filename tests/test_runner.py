"""Tests for the plan runner: scheduling, phases, validation and tools.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import threading
import time

import pytest

from conftest import ScriptedAi, call_reply
from frags.context import RunContext
from frags.errors import (
    AiError,
    PlanParseError,
    ResourceError,
    RunCancelled,
    SchemaValidationError,
    TemplateError,
)
from frags.functions import Function, FunctionRegistry
from frags.resources import BytesResourceLoader, ResourceData
from frags.runner import VALIDATION_HINT, Runner, parse_reply
from frags.schemas.json_schema import Schema
from frags.session_manager import SessionManager


def _runner(plan, ai, resources=None, **kwargs) -> Runner:
    return Runner(SessionManager.from_dict(plan), BytesResourceLoader(resources or {}), ai, **kwargs)


def _dice() -> FunctionRegistry:
    registry = FunctionRegistry()
    registry.register(Function(
        name="roll_die",
        func=lambda args, runner: {"value": 4},
        description="rolls a die",
        input_schema=Schema.from_dict({
            "type": "object", "required": ["sides"], "properties": {"sides": {"type": "integer"}},
        }),
    ))
    return registry


def _single(properties, **session) -> dict:
    """Plan with one default session owning ``properties``."""
    return {
        "sessions": {"default": {"prompt": "Go", **session}},
        "schema": {"type": "object", "required": list(properties), "properties": properties},
    }


class TestParseReply:
    """Test decoding model replies."""

    def test_plain_json(self):
        """Test a bare JSON object."""
        assert parse_reply('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        """Test a markdown code fence is tolerated."""
        assert parse_reply('```json\n{"a": 1}\n```') == {"a": 1}

    def test_not_json(self):
        """Test prose is a validation error."""
        with pytest.raises(SchemaValidationError, match="not valid JSON"):
            parse_reply("Sure! Here it is")


class TestSessions:
    """Test session scheduling over the dependency graph."""

    def test_two_sessions_with_dependency(self):
        """Test B waits for A and reads its output in the prompt."""
        plan = {
            "sessions": {
                "A": {"prompt": "Pick a topic"},
                "B": {"dependsOn": ["A"], "prompt": "Outline {{ .progress.A.topic }}"},
            },
            "schema": {
                "type": "object",
                "required": ["topic", "outline"],
                "properties": {
                    "topic": {"type": "string", "x-session": "A"},
                    "outline": {"type": "string", "x-session": "B"},
                },
            },
        }

        def handler(text, schema, results):
            if text == "Pick a topic":
                return {"topic": "owls"}
            return {"outline": "1. Owls"}

        ai = ScriptedAi(handler=handler)
        runner = _runner(plan, ai, workers=2)
        result = runner.run()

        assert result == {"A": {"topic": "owls"}, "B": {"outline": "1. Owls"}}
        assert [c["text"] for c in ai.calls] == ["Pick a topic", "Outline owls"]
        assert runner.statuses == {"A": "finished", "B": "finished"}

    def test_independent_sessions_run_in_parallel(self):
        """Test sessions without edges overlap when workers allow it."""
        barrier = threading.Barrier(2, timeout=5)
        plan = {
            "sessions": {"A": {"prompt": "a"}, "B": {"prompt": "b"}},
            "schema": {
                "type": "object",
                "properties": {
                    "x": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }

        def handler(text, schema, results):
            barrier.wait()
            return {"x": "1"} if text == "a" else {"y": "2"}

        result = _runner(plan, ScriptedAi(handler=handler), workers=2).run()
        assert result == {"A": {"x": "1"}, "B": {"y": "2"}}

    def test_each_session_gets_own_transcript(self):
        """Test every session asks on a fresh Ai instance."""
        plan = {
            "sessions": {"A": {"prompt": "a"}, "B": {"prompt": "b"}},
            "schema": {
                "type": "object",
                "properties": {
                    "x": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(handler=lambda text, schema, results: {"x": "1"} if text == "a" else {"y": "2"})
        _runner(plan, ai).run()
        # the root instance plus one per session
        assert len(ai.instances) == 3

    def test_cycle_fails_before_any_ai_call(self):
        """Test a dependency cycle is a plan-parse error and nothing is asked."""
        plan = {
            "sessions": {
                "A": {"dependsOn": "B", "prompt": "a"},
                "B": {"dependsOn": "A", "prompt": "b"},
            },
        }
        ai = ScriptedAi(replies=[])
        with pytest.raises(PlanParseError, match="dependency cycle between sessions: A -> B -> A"):
            _runner(plan, ai).run()
        assert ai.calls == []

    def test_false_expression_skips_session_and_dependents(self):
        """Test a failed dependency expression marks the session and its dependents noop."""
        plan = {
            "sessions": {
                "A": {"prompt": "check"},
                "B": {"dependsOn": [{"session": "A"}, {"expression": "progress.A.go == true"}], "prompt": "b"},
                "C": {"dependsOn": "B", "prompt": "c"},
            },
            "schema": {
                "type": "object",
                "properties": {
                    "go": {"type": "boolean", "x-session": "A"},
                    "text": {"type": "string", "x-session": "B"},
                    "summary": {"type": "string", "x-session": "C"},
                },
            },
        }
        ai = ScriptedAi(replies=[{"go": False}])
        runner = _runner(plan, ai)
        result = runner.run()

        assert result == {"A": {"go": False}}
        assert runner.statuses == {"A": "finished", "B": "noop", "C": "noop"}
        assert len(ai.calls) == 1

    def test_true_expression_runs_session(self):
        """Test a passing dependency expression lets the session run."""
        plan = {
            "sessions": {
                "A": {"prompt": "check"},
                "B": {"dependsOn": [{"expression": "progress.A.go == true"}], "prompt": "b"},
            },
            "schema": {
                "type": "object",
                "properties": {
                    "go": {"type": "boolean", "x-session": "A"},
                    "text": {"type": "string", "x-session": "B"},
                },
            },
        }
        result = _runner(plan, ScriptedAi(replies=[{"go": True}, {"text": "ran"}])).run()
        assert result == {"A": {"go": True}, "B": {"text": "ran"}}

    def test_failure_stops_dependents(self):
        """Test the first session error is returned and dependents never start."""
        plan = {
            "sessions": {"A": {"prompt": "a"}, "B": {"dependsOn": "A", "prompt": "b"}},
            "schema": {
                "type": "object",
                "properties": {
                    "x": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(replies=[AiError("upstream exploded")])
        runner = _runner(plan, ai)
        with pytest.raises(AiError, match="upstream exploded"):
            runner.run()
        assert runner.statuses["A"] == "failed"
        assert runner.statuses["B"] == "queued"

    def test_cancelled_context(self):
        """Test a cancelled run stops before asking."""
        ai = ScriptedAi(replies=[])
        ctx = RunContext()
        ctx.cancel("stopped by user")
        with pytest.raises(RunCancelled, match="stopped by user"):
            _runner(_single({"x": {"type": "string"}}), ai).run({}, ctx)
        assert ai.calls == []

    def test_session_without_schema_slice_asked_once(self):
        """Test a session owning no properties is asked once without a schema."""
        plan = {
            "sessions": {"default": {"prompt": "answer"}, "side": {"prompt": "just think"}},
            "schema": {"type": "object", "properties": {"x": {"type": "string"}}},
        }

        def handler(text, schema, results):
            return {"x": "1"} if text == "answer" else "thinking done"

        ai = ScriptedAi(handler=handler)
        result = _runner(plan, ai).run()
        assert result == {"default": {"x": "1"}}
        side = [c for c in ai.calls if c["text"] == "just think"]
        assert side[0]["schema"] is None

    def test_required_tool_missing(self):
        """Test requiredTools are checked before running."""
        plan = _single({"x": {"type": "string"}})
        plan["requiredTools"] = [{"name": "roll_die"}]
        with pytest.raises(PlanParseError, match="required tool not available: roll_die"):
            _runner(plan, ScriptedAi(replies=[])).run()
        assert _runner(plan, ScriptedAi(replies=[{"x": "ok"}]), functions=_dice()).run() == {"default": {"x": "ok"}}


class TestPhases:
    """Test phase-by-phase asking."""

    def test_two_phases(self):
        """Test each phase asks for its own slice and merges into one map."""
        plan = _single(
            {
                "title": {"type": "string", "x-phase": 0},
                "body": {"type": "string", "x-phase": 1},
            },
            nextPhasePrompt="Now the body for {{ .progress.default.title }}",
        )
        ai = ScriptedAi(replies=[{"title": "T"}, {"body": "B"}])
        result = _runner(plan, ai).run()

        assert result == {"default": {"title": "T", "body": "B"}}
        assert len(ai.calls) == 2
        assert list(ai.calls[0]["schema"]["properties"]) == ["title"]
        assert list(ai.calls[1]["schema"]["properties"]) == ["body"]
        assert ai.calls[1]["text"] == "Now the body for T"

    def test_monotonic_progress(self):
        """Test keys from earlier phases survive later phases unchanged."""
        plan = _single({
            "a": {"type": "string", "x-phase": 0},
            "b": {"type": "string", "x-phase": 1},
            "c": {"type": "string", "x-phase": 2},
        })
        snapshots = []
        replies = iter([{"a": "1"}, {"b": "2"}, {"c": "3"}])
        holder = {}

        def handler(text, schema, results):
            snapshots.append(holder["runner"].progress.get("default"))
            return next(replies)

        runner = _runner(plan, ScriptedAi(handler=handler))
        holder["runner"] = runner
        final = runner.run()["default"]

        snapshots.append(final)
        for earlier, later in zip(snapshots, snapshots[1:]):
            for key, value in earlier.items():
                assert later[key] == value
        assert final == {"a": "1", "b": "2", "c": "3"}

    def test_extra_keys_not_merged(self):
        """Test a phase only merges the keys it owns."""
        plan = _single({"a": {"type": "string", "x-phase": 0}, "b": {"type": "string", "x-phase": 1}})
        result = _runner(plan, ScriptedAi(replies=[{"a": "1", "b": "early"}, {"b": "2"}])).run()
        assert result == {"default": {"a": "1", "b": "2"}}

    def test_description_templates_rendered(self):
        """Test schema descriptions are rendered with params before asking."""
        plan = _single({"x": {"type": "string", "description": "about {{ .params.topic }}"}})
        ai = ScriptedAi(replies=[{"x": "y"}])
        _runner(plan, ai).run({"topic": "owls"})
        assert ai.calls[0]["schema"]["properties"]["x"]["description"] == "about owls"

    def test_components_resolved(self):
        """Test refs are substituted before slicing."""
        plan = _single({"owner": {"$ref": "#/components/schemas/Person"}})
        plan["schemas"] = {"Person": {"type": "object", "required": ["name"], "properties": {"name": {"type": "string"}}}}
        ai = ScriptedAi(replies=[{"owner": {"name": "Ann"}}])
        assert _runner(plan, ai).run() == {"default": {"owner": {"name": "Ann"}}}
        assert ai.calls[0]["schema"]["properties"]["owner"]["required"] == ["name"]

    def test_empty_reply_with_required_properties_retried(self):
        """Test an empty reply counts as invalid when the phase requires properties."""
        ai = ScriptedAi(replies=["", {"x": "ok"}])
        assert _runner(_single({"x": {"type": "string"}}), ai).run() == {"default": {"x": "ok"}}
        assert "missing required properties: x" in ai.calls[1]["text"]

    def test_empty_replies_with_required_properties_fail(self):
        """Test two empty replies fail the phase instead of completing it."""
        ai = ScriptedAi(replies=["", "  "])
        with pytest.raises(SchemaValidationError, match="empty reply"):
            _runner(_single({"x": {"type": "string"}}), ai).run()
        assert len(ai.calls) == 2

    def test_empty_reply_merges_nothing(self):
        """Test an empty reply is skipped with a warning when nothing is required."""
        plan = {
            "sessions": {"default": {"prompt": "Go"}},
            "schema": {"type": "object", "properties": {"x": {"type": "string"}}},
        }
        result = _runner(plan, ScriptedAi(replies=[""])).run()
        assert result == {"default": {}}


class TestValidationRetry:
    """Test the corrective retry on invalid model output."""

    def test_corrective_retry_succeeds(self):
        """Test one hint ask fixes a type error."""
        ai = ScriptedAi(replies=[{"n": "x"}, {"n": 5}])
        result = _runner(_single({"n": {"type": "integer"}}), ai).run()

        assert result == {"default": {"n": 5}}
        assert len(ai.calls) == 2
        assert ai.calls[1]["text"].startswith(VALIDATION_HINT.split("{reason}")[0])
        assert "expected integer" in ai.calls[1]["text"]

    def test_second_failure_raises(self):
        """Test only one corrective retry is made."""
        ai = ScriptedAi(replies=[{"n": "x"}, {"n": "still x"}])
        with pytest.raises(SchemaValidationError):
            _runner(_single({"n": {"type": "integer"}}), ai).run()
        assert len(ai.calls) == 2

    def test_invalid_json_retried(self):
        """Test prose replies are corrected too."""
        ai = ScriptedAi(replies=["Sure, n is five", {"n": 5}])
        assert _runner(_single({"n": {"type": "integer"}}), ai).run() == {"default": {"n": 5}}

    def test_hint_ask_has_no_resources(self):
        """Test resources are only attached to the first ask."""
        plan = _single({"n": {"type": "integer"}}, resources=["notes.txt"])
        ai = ScriptedAi(replies=[{"n": "x"}, {"n": 1}])
        _runner(plan, ai, resources={"notes.txt": b"hello"}).run()
        assert ai.calls[0]["resources"] == ["notes.txt"]
        assert ai.calls[1]["resources"] == []


class TestAttempts:
    """Test transient failure retries driven by attempts."""

    def test_transient_error_retried(self):
        """Test attempts allows retrying a transient upstream error."""
        sleeps = []
        ai = ScriptedAi(replies=[Exception("503 service unavailable"), {"x": "ok"}])
        runner = _runner(_single({"x": {"type": "string"}}, attempts=2), ai, sleep_func=sleeps.append)
        assert runner.run() == {"default": {"x": "ok"}}
        assert sleeps == [5.0]

    def test_default_single_attempt(self):
        """Test without attempts a transient error fails the run as an ai error."""
        ai = ScriptedAi(replies=[Exception("503 service unavailable")])
        with pytest.raises(AiError, match="model call failed"):
            _runner(_single({"x": {"type": "string"}}), ai, sleep_func=lambda s: None).run()

    def test_peer_failure_interrupts_backoff(self):
        """Test a session waiting between attempts stops when a peer fails."""
        backing_off = threading.Event()
        plan = {
            "sessions": {"S": {"prompt": "s", "attempts": 3}, "F": {"prompt": "f"}},
            "schema": {
                "type": "object",
                "properties": {
                    "x": {"type": "string", "x-session": "S"},
                    "y": {"type": "integer", "x-session": "F"},
                },
            },
        }

        def handler(text, schema, results):
            if text == "s":
                backing_off.set()
                raise Exception("503 overloaded")
            backing_off.wait(5)
            return {"y": "not a number"}

        runner = _runner(plan, ScriptedAi(handler=handler), workers=2, retry_delay=30)
        started = time.monotonic()
        with pytest.raises(SchemaValidationError):
            runner.run()
        assert time.monotonic() - started < 5
        assert runner.statuses["S"] == "failed"


class TestParams:
    """Test parameter checking at run start."""

    def _plan(self):
        plan = _single({"x": {"type": "string"}}, prompt="Count to {{ .params.count }}")
        plan["parameters"] = {"type": "object", "required": ["count"], "properties": {"count": {"type": "integer"}}}
        return plan

    def test_loose_mode_accepts_string(self):
        """Test count=3 from the command line passes in loose mode."""
        sm = SessionManager.from_dict(self._plan())
        sm.set_loose_params(True)
        ai = ScriptedAi(replies=[{"x": "1 2 3"}])
        Runner(sm, BytesResourceLoader(), ai).run({"count": "3"})
        assert ai.calls[0]["text"] == "Count to 3"

    def test_strict_mode_rejects_string(self):
        """Test strict mode refuses the string before any Ai call."""
        ai = ScriptedAi(replies=[])
        with pytest.raises(SchemaValidationError):
            _runner(self._plan(), ai).run({"count": "3"})
        assert ai.calls == []

    def test_vars_evaluated(self):
        """Test plan vars are rendered against params."""
        plan = _single({"x": {"type": "string"}}, prompt="{{ .vars.greeting }}")
        plan["vars"] = {"greeting": "hello {{ .params.who }}"}
        ai = ScriptedAi(replies=[{"x": "hi"}])
        _runner(plan, ai).run({"who": "ann"})
        assert ai.calls[0]["text"] == "hello ann"


class TestFunctions:
    """Test function calling through the Ai tool loop."""

    def test_function_call_fed_back(self):
        """Test the model calls roll_die and answers with its value."""
        def handler(text, schema, results):
            if not results:
                return call_reply("roll_die", sides=6)
            assert results[0].output == {"value": 4}
            return {"result": results[0].output["value"]}

        ai = ScriptedAi(handler=handler)
        plan = _single({"result": {"type": "integer"}}, tools=[{"name": "roll_die"}])
        result = _runner(plan, ai, functions=_dice()).run()

        assert result == {"default": {"result": 4}}
        assert ai.calls[0]["functions"] == ["roll_die"]

    def test_session_sees_only_its_tools(self):
        """Test functions not listed in a session's tools are hidden."""
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(_single({"x": {"type": "string"}}), ai, functions=_dice()).run()
        assert ai.calls[0]["functions"] == []

    def test_tool_loop_bound(self):
        """Test a model that keeps calling functions fails with an ai error."""
        ai = ScriptedAi(handler=lambda text, schema, results: call_reply("roll_die", sides=6), max_round_trips=3)
        plan = _single({"result": {"type": "integer"}}, tools=[{"name": "roll_die"}])
        runner = _runner(plan, ai, functions=_dice())
        with pytest.raises(AiError, match="after 3 round-trips"):
            runner.run()
        assert runner.statuses["default"] == "failed"

    def test_bad_arguments_reported_to_model(self):
        """Test invalid call arguments come back as an error the model can fix."""
        def handler(text, schema, results):
            if not results:
                return call_reply("roll_die", sides="six")
            assert "invalid arguments" in results[0].output["error"]
            return {"result": 0}

        plan = _single({"result": {"type": "integer"}}, tools=[{"name": "roll_die"}])
        assert _runner(plan, ScriptedAi(handler=handler), functions=_dice()).run() == {"default": {"result": 0}}

    def test_function_output_transformer(self):
        """Test plan-level onFunctionOutput transformers reshape results."""
        def handler(text, schema, results):
            if not results:
                return call_reply("roll_die", sides=6)
            return {"result": results[0].output["doubled"]}

        plan = _single({"result": {"type": "integer"}}, tools=[{"name": "roll_die"}])
        plan["transformers"] = [{"expr": "{'doubled': args.value * 2}", "onFunctionOutput": "roll_die"}]
        assert _runner(plan, ScriptedAi(handler=handler), functions=_dice()).run() == {"default": {"result": 8}}


class TestPromptAssembly:
    """Test what the first prompt of a session contains."""

    def test_pre_prompts_joined(self):
        """Test prePrompts come before the prompt."""
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(_single({"x": {"type": "string"}}, prePrompt=["First", "Second"], prompt="Third"), ai).run()
        assert ai.calls[0]["text"] == "First\n\nSecond\n\nThird"

    def test_pre_call_block(self):
        """Test a preCall result is shown to the model as a CALL block."""
        plan = _single(
            {"x": {"type": "string"}},
            preCalls=[{"name": "roll_die", "args": {"sides": "$(params.sides)"}, "description": "a roll"}],
        )
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(plan, ai, functions=_dice()).run({"sides": 6})
        text = ai.calls[0]["text"]
        assert text.startswith("\n=== CALL: roll_die - a roll ===\n")
        assert '"value": 4' in text
        assert text.endswith("===\n\nGo")

    def test_pre_call_into_vars(self):
        """Test a preCall may store its result in vars instead."""
        plan = _single(
            {"x": {"type": "string"}},
            preCalls=[{"name": "roll_die", "args": {"sides": 6}, "in": "vars", "var": "roll"}],
            prompt="Rolled {{ .vars.roll.value }}",
        )
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(plan, ai, functions=_dice()).run()
        assert ai.calls[0]["text"] == "Rolled 4"

    def test_context_block(self):
        """Test context: true shows the progress map so far."""
        plan = {
            "sessions": {
                "A": {"prompt": "a"},
                "B": {"dependsOn": "A", "prompt": "b", "context": True},
            },
            "schema": {
                "type": "object",
                "properties": {
                    "topic": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(replies=[{"topic": "owls"}, {"y": "2"}])
        _runner(plan, ai).run()
        text = ai.calls[1]["text"]
        assert text.startswith("=== CURRENT CONTEXT ===\n")
        assert '"topic": "owls"' in text
        assert text.endswith("===\n\nb")

    def test_context_block_k_format(self):
        """Test K-format rendering of context blocks."""
        plan = {
            "sessions": {"A": {"prompt": "a"}, "B": {"dependsOn": "A", "prompt": "b", "context": True}},
            "schema": {
                "type": "object",
                "properties": {
                    "topic": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(replies=[{"topic": "owls"}, {"y": "2"}])
        _runner(plan, ai, use_k_format=True).run()
        assert '- **topic**: `(string)` "owls"' in ai.calls[1]["text"]

    def test_session_system_prompt(self):
        """Test session system prompts override the plan's."""
        plan = _single({"x": {"type": "string"}}, systemPrompt="Be {{ .params.tone }}")
        plan["systemPrompt"] = "Be generic"
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(plan, ai).run({"tone": "brief"})
        assert ai.calls[0]["system"] == "Be brief"


class TestResources:
    """Test resources attached to sessions."""

    def test_resources_for_ai_and_vars(self):
        """Test ai resources are attached and vars resources decoded."""
        plan = _single(
            {"x": {"type": "string"}},
            resources=["notes.txt", {"identifier": "data.json", "in": "vars", "var": "data"}],
            prompt="Count {{ .vars.data.n }}",
        )
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(plan, ai, resources={"notes.txt": b"hello", "data.json": b'{"n": 2}'}).run()
        assert ai.calls[0]["resources"] == ["notes.txt"]
        assert ai.calls[0]["text"] == "Count 2"

    def test_templated_identifier(self):
        """Test resource identifiers are rendered with params."""
        plan = _single({"x": {"type": "string"}}, resources=["{{ .params.file }}"])
        ai = ScriptedAi(replies=[{"x": "1"}])
        _runner(plan, ai, resources={"a.txt": b"a"}).run({"file": "a.txt"})
        assert ai.calls[0]["resources"] == ["a.txt"]

    def test_shared_resource_loaded_once(self):
        """Test two sessions naming one resource cause a single load."""
        loads = []

        class CountingLoader:
            def load(self, identifier, params=None):
                loads.append(identifier)
                return ResourceData(identifier, "text/plain", b"shared")

        plan = {
            "sessions": {"A": {"prompt": "a", "resources": ["s.txt"]}, "B": {"prompt": "b", "resources": ["s.txt"]}},
            "schema": {
                "type": "object",
                "properties": {
                    "x": {"type": "string", "x-session": "A"},
                    "y": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(handler=lambda text, schema, results: {"x": "1"} if text == "a" else {"y": "2"})
        runner = Runner(SessionManager.from_dict(plan), CountingLoader(), ai, workers=2)
        runner.run()
        assert loads == ["s.txt"]
        assert runner.resource_loads == 1

    def test_missing_resource_fails(self):
        """Test a missing resource is a resource error."""
        plan = _single({"x": {"type": "string"}}, resources=["nope.txt"])
        with pytest.raises(ResourceError, match="resource not found: nope.txt"):
            _runner(plan, ScriptedAi(replies=[])).run()


class TestTransformers:
    """Test session and phase transformers."""

    def test_session_transformer(self):
        """Test session transformers rewrite the session slice."""
        plan = _single({"topic": {"type": "string"}}, transformers=[{"expr": "{'topic': args.topic | upper}"}])
        assert _runner(plan, ScriptedAi(replies=[{"topic": "owls"}])).run() == {"default": {"topic": "OWLS"}}

    def test_phase_transformer_before_next_phase(self):
        """Test phase transformers run before the next phase is asked."""
        plan = _single(
            {"a": {"type": "string", "x-phase": 0}, "b": {"type": "string", "x-phase": 1}},
            transformers=[{"regex": "draft", "replace": "final", "phase": 0}],
            nextPhasePrompt="Use {{ .progress.default.a }}",
        )
        ai = ScriptedAi(replies=[{"a": "draft"}, {"b": "x"}])
        result = _runner(plan, ai).run()
        assert ai.calls[1]["text"] == "Use final"
        assert result == {"default": {"a": "final", "b": "x"}}


class TestIteration:
    """Test sessions that run once per item of iterateOn."""

    def test_runs_once_per_item(self):
        """Test each item gets a fresh Ai and its answers are collected in order."""
        plan = _single(
            {"fact": {"type": "string"}},
            prompt="One fact about {{ .it }}",
            iterateOn="params.birds",
        )

        def handler(text, schema, results):
            return {"fact": text.rsplit(" ", 1)[-1] + " fly"}

        ai = ScriptedAi(handler=handler)
        result = _runner(plan, ai).run({"birds": ["owls", "wrens"]})

        assert result == {"default": {"fact": ["owls fly", "wrens fly"]}}
        assert [c["text"] for c in ai.calls] == ["One fact about owls", "One fact about wrens"]
        # the root instance plus one per item
        assert len(ai.instances) == 3

    def test_items_from_earlier_session(self):
        """Test iterateOn over another session's output waits for it."""
        plan = {
            "sessions": {
                "A": {"prompt": "List birds"},
                "B": {"prompt": "Describe {{ .it.name }}", "iterateOn": "progress.A.birds"},
            },
            "schema": {
                "type": "object",
                "properties": {
                    "birds": {"type": "array", "x-session": "A", "items": {"type": "object"}},
                    "size": {"type": "string", "x-session": "B"},
                },
            },
        }
        ai = ScriptedAi(replies=[{"birds": [{"name": "owl"}, {"name": "wren"}]}, {"size": "big"}, {}])
        result = _runner(plan, ai).run()

        assert [c["text"] for c in ai.calls] == ["List birds", "Describe owl", "Describe wren"]
        assert result["B"] == {"size": ["big", None]}

    def test_phases_per_item(self):
        """Test every item walks all phases before the next item starts."""
        plan = _single(
            {"name": {"type": "string", "x-phase": 0}, "note": {"type": "string", "x-phase": 1}},
            prompt="Name {{ .it }}",
            nextPhasePrompt="Note {{ .it }}",
            iterateOn="[1, 2]",
        )
        ai = ScriptedAi(replies=[{"name": "a"}, {"note": "x"}, {"name": "b"}, {"note": "y"}])
        result = _runner(plan, ai).run()

        assert [c["text"] for c in ai.calls] == ["Name 1", "Note 1", "Name 2", "Note 2"]
        assert result == {"default": {"name": ["a", "b"], "note": ["x", "y"]}}

    def test_empty_list_asks_nothing(self):
        """Test an empty iterateOn list runs no items."""
        plan = _single({"fact": {"type": "string"}}, iterateOn="params.birds")
        ai = ScriptedAi(replies=[])
        assert _runner(plan, ai).run({"birds": []}) == {}
        assert ai.calls == []

    def test_not_an_array(self):
        """Test iterateOn must evaluate to an array."""
        plan = _single({"fact": {"type": "string"}}, iterateOn="params.birds")
        with pytest.raises(TemplateError, match="did not evaluate to an array"):
            _runner(plan, ScriptedAi(replies=[])).run({"birds": "owls"})
