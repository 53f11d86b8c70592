# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Structured run events for frags.

Events go to the standard logger and, optionally, to a bounded EventStream
that a consumer (the web tier, a JSONL sink) drains. Producers never block:
when the stream is full the event is dropped and counted.
"""

import json
import logging
import queue
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional


LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

# Event types
GENERIC = "generic"
PROGRESS = "progress"
RESULT = "result"
ERROR = "error"

# Progress actions
PHASE_START = "phase_start"
PHASE_END = "phase_end"
SESSION_START = "session_start"
SESSION_END = "session_end"


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class Event:
    """A structured log record."""
    level: str
    type: str
    component: str
    message: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: _utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EventStream:
    """Bounded, non-blocking event channel."""

    _CLOSED = object()

    def __init__(self, maxsize: int = 1000, level: str = "info"):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self.level = LEVELS.get(level, logging.INFO)
        self.dropped = 0
        self._lock = threading.Lock()

    def accepts(self, level: str) -> bool:
        return LEVELS.get(level, logging.INFO) >= self.level

    def publish(self, event: Event) -> bool:
        """Enqueue ``event``; returns False if it was dropped."""
        if not self.accepts(event.level):
            return True
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            with self._lock:
                self.dropped += 1
            return False

    def close(self) -> None:
        """Signal consumers that no more events will come."""
        while True:
            try:
                self._queue.put_nowait(self._CLOSED)
                return
            except queue.Full:
                # make room for the sentinel
                try:
                    self._queue.get_nowait()
                    with self._lock:
                        self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None once the stream is closed.

        Raises:
            queue.Empty: If ``timeout`` elapses first
        """
        item = self._queue.get(timeout=timeout)
        if item is self._CLOSED:
            return None
        return item

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class JsonlEventSink:
    """Simple JSONL event logger."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def write(self, event: Event) -> None:
        """Append an event to the JSONL file."""
        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(event.to_json() + "\n")


class StreamerLogger:
    """Emits events to a logger, an optional stream and an optional sink."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        stream: Optional[EventStream] = None,
        sink: Optional[JsonlEventSink] = None,
    ):
        self.logger = logger or logging.getLogger("frags")
        self.stream = stream
        self.sink = sink

    def emit(
        self,
        level: str,
        type: str,
        component: str,
        message: str,
        **args: Any,
    ) -> Event:
        event = Event(level=level, type=type, component=component, message=message, args=args)
        details = " ".join(f"{k}={v}" for k, v in args.items() if v is not None)
        self.logger.log(LEVELS.get(level, logging.INFO), f"[{component}] {message} {details}".rstrip())
        if self.stream is not None and not self.stream.publish(event):
            self.logger.warning(f"Event stream full, dropped event: {message}")
        if self.sink is not None:
            self.sink.write(event)
        return event

    def debug(self, component: str, message: str, **args: Any) -> Event:
        return self.emit("debug", GENERIC, component, message, **args)

    def info(self, component: str, message: str, **args: Any) -> Event:
        return self.emit("info", GENERIC, component, message, **args)

    def warning(self, component: str, message: str, **args: Any) -> Event:
        return self.emit("warning", GENERIC, component, message, **args)

    def error(self, component: str, message: str, error: Optional[BaseException] = None, **args: Any) -> Event:
        if error is not None:
            args["error"] = str(error)
            args.setdefault("kind", getattr(error, "kind", "internal"))
        return self.emit("error", ERROR, component, message, **args)

    def progress(self, action: str, session: str, phase: Optional[int] = None, **args: Any) -> Event:
        return self.emit("info", PROGRESS, "runner", action, action=action, session=session, phase=phase, **args)

    def result(self, data: Any) -> Event:
        return self.emit("info", RESULT, "runner", "result", result=data)
