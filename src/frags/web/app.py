# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Web server - run plans over HTTP.

    POST /execute        body: {plan, tools?, parameters, resources}
    POST /run/{file}     body: {parameters, resources}; plan from PLANS_DIR

Both answer the progress map as JSON, or stream events as SSE with
``?streaming=true&level=debug|info``. The stream always ends with a
``result`` or an ``error`` event.
"""

import base64
import binascii
import logging
import re
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

from fastapi import Body, FastAPI, Header, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from frags.ai import Ai
from frags.config import Settings
from frags.context import RunContext
from frags.errors import ConfigError, FragsError, PlanParseError
from frags.events import ERROR, RESULT, Event, EventStream, StreamerLogger
from frags.executor import build_ai, execute
from frags.resources import BytesResourceLoader
from frags.session_manager import SessionManager
from frags.tools import ToolsConfig


logger = logging.getLogger(__name__)

PLAN_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class RunRequest(BaseModel):
    parameters: Dict[str, Any] = Field(default_factory=dict)
    resources: Dict[str, str] = Field(default_factory=dict)


class ExecuteRequest(RunRequest):
    plan: Union[str, Dict[str, Any]]
    tools: Optional[Dict[str, Any]] = None


def decode_resources(resources: Dict[str, str]) -> Dict[str, bytes]:
    """Decode ``name -> base64`` request resources.

    Raises:
        PlanParseError: If a value is not valid base64
    """
    decoded = {}
    for name, data in resources.items():
        try:
            decoded[name] = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise PlanParseError(f"resource '{name}' is not valid base64")
    return decoded


def _sse(event: Event) -> str:
    return f"event: {event.type}\ndata: {event.to_json()}\n\n"


def create_app(
    settings: Optional[Settings] = None,
    ai_factory: Optional[Callable[[], Ai]] = None,
    tools_config: Optional[ToolsConfig] = None,
    mode: str = "all",
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Runtime settings (API key, plans dir, workers)
        ai_factory: Creates the model adapter per request (default: llm)
        tools_config: Tools for /run requests
        mode: "execute", "run" or "all" (which endpoints to serve)
    """
    settings = settings or Settings()
    make_ai = ai_factory or (lambda: build_ai(settings))
    app = FastAPI(title="frags", description="Declarative LLM plan runner")

    def _authorized(api_key: Optional[str]) -> bool:
        return not settings.web_api_key or api_key == settings.web_api_key

    def _run(
        sm: SessionManager,
        request: RunRequest,
        tools: Optional[ToolsConfig],
        streaming: bool,
        level: str,
    ):
        loader = BytesResourceLoader(decode_resources(request.resources))

        def run_plan(streamer: StreamerLogger, ctx: RunContext) -> Dict[str, Any]:
            return execute(
                ctx, sm, request.parameters, tools, loader, streamer,
                settings=settings, ai=make_ai(), loose_params=False,
            )

        if not streaming:
            result = run_plan(StreamerLogger(logger), RunContext(timeout_s=settings.run_timeout))
            return JSONResponse(result)
        return StreamingResponse(_stream(run_plan, level), media_type="text/event-stream")

    def _stream(run_plan, level: str) -> Iterator[str]:
        stream = EventStream(maxsize=settings.event_buffer, level=level)
        streamer = StreamerLogger(logger, stream=stream)
        ctx = RunContext(timeout_s=settings.run_timeout)
        outcome: Dict[str, Any] = {}

        def worker() -> None:
            try:
                outcome["result"] = run_plan(streamer, ctx)
            except Exception as e:
                outcome["error"] = e
            finally:
                stream.close()

        thread = threading.Thread(target=worker, name="frags-web-run", daemon=True)
        thread.start()
        try:
            for event in stream:
                yield _sse(event)
        finally:
            ctx.cancel("client disconnected")
        thread.join()

        if "error" in outcome:
            error = outcome["error"]
            yield _sse(Event(
                level="error", type=ERROR, component="web", message=str(error),
                args={"kind": getattr(error, "kind", "internal")},
            ))
        else:
            yield _sse(Event(
                level="info", type=RESULT, component="web", message="result",
                args={"result": outcome.get("result")},
            ))
        if stream.dropped:
            logger.warning(f"Dropped {stream.dropped} events for a slow client")

    def _respond(call: Callable[[], Any], api_key: Optional[str]):
        if not _authorized(api_key):
            return JSONResponse({"error": "invalid or missing x-api-key"}, status_code=401)
        try:
            return call()
        except FragsError as e:
            logger.warning(f"Request failed ({e.kind}): {e}")
            return JSONResponse({"error": str(e), "kind": e.kind}, status_code=500)
        except Exception as e:
            logger.exception("Request failed")
            return JSONResponse({"error": str(e), "kind": "internal"}, status_code=500)

    if mode not in ("execute", "run", "all"):
        raise ConfigError(f"unknown web mode: {mode}")

    def execute_endpoint(
        payload: ExecuteRequest = Body(...),
        streaming: bool = Query(False),
        level: str = Query("info"),
        x_api_key: Optional[str] = Header(None),
    ):
        def call():
            if isinstance(payload.plan, str):
                sm = SessionManager.from_yaml(payload.plan)
            else:
                sm = SessionManager.from_dict(payload.plan)
            tools = ToolsConfig.from_dict(payload.tools) if payload.tools else ToolsConfig()
            return _run(sm, payload, tools, streaming, level)

        return _respond(call, x_api_key)

    def run_endpoint(
        file: str,
        payload: Optional[RunRequest] = Body(None),
        streaming: bool = Query(False),
        level: str = Query("info"),
        x_api_key: Optional[str] = Header(None),
    ):
        def call():
            return _run(load_named_plan(settings, file), payload or RunRequest(), tools_config, streaming, level)

        return _respond(call, x_api_key)

    if mode in ("execute", "all"):
        app.post("/execute")(execute_endpoint)
    if mode in ("run", "all"):
        app.post("/run/{file}")(run_endpoint)
    return app


def load_named_plan(settings: Settings, name: str) -> SessionManager:
    """Load ``<PLANS_DIR>/<name>.yaml``.

    Raises:
        PlanParseError: Invalid name or missing plan
    """
    if not PLAN_NAME_PATTERN.match(name) or ".." in name:
        raise PlanParseError(f"invalid plan name: {name}")
    plans_dir = Path(settings.plans_dir).expanduser()
    for suffix in (".yaml", ".yml"):
        path = plans_dir / f"{name}{suffix}"
        if path.exists():
            return SessionManager.from_file(path)
    raise PlanParseError(f"plan not found: {name}")


def list_plans(settings: Settings) -> list:
    """Plan names available in PLANS_DIR."""
    plans_dir = Path(settings.plans_dir).expanduser()
    if not plans_dir.is_dir():
        raise ConfigError(f"PLANS_DIR does not exist: {plans_dir}")
    return sorted({p.stem for p in plans_dir.iterdir() if p.suffix in (".yaml", ".yml")})
