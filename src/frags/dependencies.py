# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Session dependency graph.

Edges come from two places:
- declared ``dependsOn`` entries (sessions, or sessions referenced by
  dependency expressions)
- implicit references: a session whose prompts, iterateOn, resources or pre-calls
  mention ``.progress.B`` depends on B

The graph is computed once per run and must be a DAG.
"""

import json
import re
from typing import Dict, Iterable, List, Optional, Set

from frags.errors import PlanParseError
from frags.schemas.plan import Plan, Session


PROGRESS_REF_PATTERN = re.compile(r"""progress(?:\.([A-Za-z0-9_-]+)|\[["']([^"']+)["']\])""")


def referenced_sessions(text: str) -> Set[str]:
    """Session names referenced as ``progress.<name>`` in ``text``."""
    return {m.group(1) or m.group(2) for m in PROGRESS_REF_PATTERN.finditer(text or "")}


def _session_texts(session: Session) -> Iterable[str]:
    yield session.prompt
    yield from session.pre_prompt
    if session.next_phase_prompt:
        yield session.next_phase_prompt
    if session.iterate_on:
        yield session.iterate_on
    for resource in session.resources:
        yield resource.identifier
    for call in session.pre_calls:
        yield json.dumps(call.args, default=str)
    for dep in session.depends_on:
        if dep.expression:
            yield dep.expression


class DependencyGraph:
    """``session -> sessions it waits for``."""

    def __init__(self, edges: Dict[str, Set[str]]):
        self.edges = edges
        cycle = find_cycle(edges)
        if cycle:
            raise PlanParseError(f"dependency cycle between sessions: {' -> '.join(cycle)}")

    @classmethod
    def from_plan(cls, plan: Plan) -> "DependencyGraph":
        """Build the graph from declared and implicit dependencies.

        Raises:
            PlanParseError: Unknown dependency or a cycle
        """
        edges: Dict[str, Set[str]] = {}
        for name, session in plan.sessions.items():
            deps: Set[str] = set()
            for dep in session.depends_on:
                if dep.session is not None:
                    if dep.session not in plan.sessions:
                        raise PlanParseError(f"Session '{name}' depends on unknown session '{dep.session}'")
                    deps.add(dep.session)
            implicit: Set[str] = set()
            for text in _session_texts(session):
                implicit.update(ref for ref in referenced_sessions(text) if ref in plan.sessions)
            # a session may read its own earlier phases
            implicit.discard(name)
            edges[name] = deps | implicit
        return cls(edges)

    def dependencies(self, name: str) -> Set[str]:
        return self.edges.get(name, set())

    def ready(self, finished: Set[str], started: Set[str]) -> List[str]:
        """Not-yet-started sessions whose dependencies have all finished."""
        return [
            name for name, deps in self.edges.items()
            if name not in started and deps <= finished
        ]


def find_cycle(edges: Dict[str, Set[str]]) -> Optional[List[str]]:
    """Return one cycle as ``[a, b, ..., a]``, or None for a DAG."""
    white, grey, black = 0, 1, 2
    color = {n: white for n in edges}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = grey
        stack.append(node)
        for dep in sorted(edges.get(node, ())):
            if color.get(dep, white) == grey:
                return stack[stack.index(dep):] + [dep]
            if color.get(dep, white) == white:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        color[node] = black
        return None

    for node in sorted(edges):
        if color[node] == white:
            cycle = visit(node)
            if cycle:
                return cycle
    return None
