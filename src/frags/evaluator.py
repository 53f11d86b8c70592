# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Evaluator - render plan templates and evaluate expressions.

Plan templates use dotted actions (``{{ .params.topic }}``,
``{{ if eq .vars.mode "x" }}``, ``{{ range .progress.A.items }}``). They are
translated to Jinja2 source and rendered in a sandboxed environment:

    {{ .a.b }}                  -> {{ a["b"] }}
    {{ json .x }}               -> {{ (x | json) }}
    {{ .x | default "n/a" }}    -> {{ (x | default("n/a")) }}
    {{ if gt .n 3 }}..{{ end }} -> {% if (n > 3) %}..{% endif %}
    {{ range .items }}{{ . }}   -> {% for _it1 in _iter(items) %}{{ _it1 }}

Expressions (transformers, dependency conditions, ``$(...)`` values) are
Jinja2 expressions evaluated against the same scope.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import jinja2
import yaml
from jinja2.sandbox import SandboxedEnvironment

from frags.errors import TemplateError
from frags.k_format import to_k_format
from frags.schemas.json_schema import Schema


logger = logging.getLogger(__name__)

ENV_PREFIX = "FRAGS_"
MAX_RENDER_PASSES = 3

# Whole-string expression reference: "$(progress.A.items | length)"
EXPR_REF_PATTERN = re.compile(r"^\$\((.*)\)$", re.DOTALL)


# =============================================================================
# Scope
# =============================================================================

@dataclass
class EvalScope:
    """Names visible to templates and expressions."""
    params: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    progress: Dict[str, Any] = field(default_factory=dict)
    components: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    it: Any = None

    def with_vars(self, extra: Mapping[str, Any]) -> "EvalScope":
        """Copy of this scope with ``extra`` layered over vars."""
        return EvalScope(
            params=self.params,
            vars={**self.vars, **extra},
            progress=self.progress,
            components=self.components,
            env=self.env,
            it=self.it,
        )

    def to_context(self) -> Dict[str, Any]:
        context = {
            "params": self.params,
            "vars": self.vars,
            "progress": self.progress,
            "context": self.progress,
            "components": self.components,
            "env": self.env,
            "it": self.it,
        }
        context["_root"] = dict(context)
        return context


def env_scope(prefix: str = ENV_PREFIX, environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment variables whose name starts with ``prefix``."""
    source = os.environ if environ is None else environ
    return {k: v for k, v in source.items() if k.startswith(prefix)}


# =============================================================================
# Filters and globals
# =============================================================================

def _defined(value: Any) -> Any:
    if isinstance(value, jinja2.Undefined):
        str(value)  # raises for StrictUndefined
        return None
    return value


def _json_filter(value: Any, indent: int = 2) -> str:
    return json.dumps(_defined(value), indent=indent, default=str)


def _yaml_filter(value: Any) -> str:
    return yaml.safe_dump(_defined(value), sort_keys=False, allow_unicode=True).rstrip("\n")


def _kformat_filter(value: Any) -> str:
    return to_k_format(_defined(value))


def _default_filter(value: Any, fallback: Any = "") -> Any:
    value = value if not isinstance(value, jinja2.Undefined) else None
    if value is None or value is False or (hasattr(value, "__len__") and len(value) == 0):
        return fallback
    return value


def _upper(value: Any) -> str:
    return str(_default_filter(value, "")).upper()


def _lower(value: Any) -> str:
    return str(_default_filter(value, "")).lower()


def unique(values: Iterable[Any]) -> List[Any]:
    """Distinct values, first occurrence wins."""
    seen: List[Any] = []
    for v in values or []:
        if v not in seen:
            seen.append(v)
    return seen


def chunk(values: List[Any], size: int) -> List[List[Any]]:
    """Split a list into lists of at most ``size`` items."""
    values = list(values or [])
    size = max(1, int(size))
    return [values[i:i + size] for i in range(0, len(values), size)]


def _iter(value: Any) -> List[Any]:
    if value is None or isinstance(value, jinja2.Undefined):
        return []
    if isinstance(value, dict):
        return [value[k] for k in sorted(value, key=str)]
    return list(value)


def _pairs(value: Any) -> List[Tuple[Any, Any]]:
    if value is None or isinstance(value, jinja2.Undefined):
        return []
    if isinstance(value, dict):
        return [(k, value[k]) for k in sorted(value, key=str)]
    return list(enumerate(value))


_FILTERS = {
    "json": _json_filter,
    "yaml": _yaml_filter,
    "kformat": _kformat_filter,
    "default": _default_filter,
    "upper": _upper,
    "lower": _lower,
    "unique": unique,
    "chunk": chunk,
}

_GLOBALS = {
    "_iter": _iter,
    "_pairs": _pairs,
    "unique": unique,
    "chunk": chunk,
}


def _build_env(undefined) -> SandboxedEnvironment:
    env = SandboxedEnvironment(
        autoescape=False,
        undefined=undefined,
        keep_trailing_newline=True,
    )
    env.filters.update(_FILTERS)
    env.globals.update(_GLOBALS)
    return env


_LENIENT_ENV = _build_env(jinja2.ChainableUndefined)
_STRICT_ENV = _build_env(jinja2.StrictUndefined)


def _env(strict: bool) -> SandboxedEnvironment:
    return _STRICT_ENV if strict else _LENIENT_ENV


# =============================================================================
# Template translation
# =============================================================================

ACTION_PATTERN = re.compile(r"\{\{(- )?(.*?)( -)?\}\}", re.DOTALL)
NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?([eE][-+]?\d+)?$")
IDENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
BARE_PATH_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_-]+)*$")
VAR_DECL_PATTERN = re.compile(r"^\$(\w+)\s*:?=\s*(.+)$", re.DOTALL)
RANGE_DECL_PATTERN = re.compile(r"^\$(\w+)\s*(?:,\s*\$(\w+)\s*)?:=\s*(.+)$", re.DOTALL)

BINARY_OPS = {"eq": "==", "ne": "!=", "lt": "<", "le": "<=", "gt": ">", "ge": ">="}
FILTER_FUNCS = {
    "json": "json",
    "yaml": "yaml",
    "upper": "upper",
    "lower": "lower",
    "default": "default",
    "kformat": "kformat",
    "kf": "kformat",
    "trim": "trim",
    "title": "title",
    "unique": "unique",
    "chunk": "chunk",
}
JINJA_KEYWORDS = {"and", "or", "not", "in", "is", "if", "else", "true", "false", "none", "True", "False", "None"}


class _Translator:
    """Translates one dotted-action template into Jinja2 source."""

    def __init__(self, text: str):
        self.text = text
        self.blocks: List[str] = []
        self.dots: List[str] = []
        self.counter = 0

    def translate(self) -> str:
        out: List[str] = []
        pos = 0
        for match in ACTION_PATTERN.finditer(self.text):
            out.append(_literal(self.text[pos:match.start()]))
            pos = match.end()
            left = "-" if match.group(1) else ""
            right = "-" if match.group(3) else ""
            out.append(self._action(match.group(2).strip(), left, right))
        out.append(_literal(self.text[pos:]))
        if self.blocks:
            raise TemplateError(f"unclosed '{self.blocks[-1]}' block in template")
        return "".join(out)

    @property
    def dot(self) -> Optional[str]:
        return self.dots[-1] if self.dots else None

    def _action(self, body: str, left: str, right: str) -> str:
        if body.startswith("/*") and body.endswith("*/"):
            return ""
        word, _, rest = body.partition(" ")
        rest = rest.strip()

        if word == "if":
            self.blocks.append("if")
            return f"{{%{left} if {self.pipeline(rest)} {right}%}}"
        if word == "else":
            if rest.startswith("if "):
                return f"{{%{left} elif {self.pipeline(rest[3:].strip())} {right}%}}"
            return f"{{%{left} else {right}%}}"
        if word == "range":
            return self._range(rest, left, right)
        if word == "with":
            self.counter += 1
            name = f"_w{self.counter}"
            self.blocks.append("with")
            self.dots.append(name)
            return f"{{%{left} with {name} = {self.pipeline(rest)} %}}{{% if {name} {right}%}}"
        if word == "end":
            if not self.blocks:
                raise TemplateError("unexpected {{ end }} in template")
            block = self.blocks.pop()
            if block == "if":
                return f"{{%{left} endif {right}%}}"
            self.dots.pop()
            if block == "range":
                return f"{{%{left} endfor {right}%}}"
            return f"{{%{left} endif %}}{{% endwith {right}%}}"

        decl = VAR_DECL_PATTERN.match(body)
        if decl:
            return f"{{%{left} set {decl.group(1)} = {self.pipeline(decl.group(2))} {right}%}}"
        return f"{{{{{left} {self.pipeline(body)} {right}}}}}"

    def _range(self, rest: str, left: str, right: str) -> str:
        self.blocks.append("range")
        decl = RANGE_DECL_PATTERN.match(rest)
        if decl and decl.group(2):
            key, item = decl.group(1), decl.group(2)
            self.dots.append(item)
            return f"{{%{left} for {key}, {item} in _pairs({self.pipeline(decl.group(3))}) {right}%}}"
        if decl:
            item = decl.group(1)
            self.dots.append(item)
            return f"{{%{left} for {item} in _iter({self.pipeline(decl.group(3))}) {right}%}}"
        self.counter += 1
        item = f"_it{self.counter}"
        expr = self.pipeline(rest)
        self.dots.append(item)
        return f"{{%{left} for {item} in _iter({expr}) {right}%}}"

    # -------------------------------------------------------------------------
    # Pipelines and commands
    # -------------------------------------------------------------------------

    def pipeline(self, text: str) -> str:
        commands = _split(text, "|")
        if not commands or not commands[0].strip():
            raise TemplateError(f"empty pipeline in template action: {text!r}")
        expr = self.command(_split(commands[0], None), piped=None)
        for cmd in commands[1:]:
            expr = self.command(_split(cmd, None), piped=expr)
        return expr

    def command(self, tokens: List[str], piped: Optional[str]) -> str:
        if not tokens:
            raise TemplateError("empty command in template action")
        head = tokens[0]
        if head in BINARY_OPS or head in FILTER_FUNCS or head in ("and", "or", "not", "len", "index", "printf", "print"):
            args = [self.operand(t) for t in tokens[1:]]
            if piped is not None:
                args.append(piped)
            return _call(head, args)
        if piped is not None:
            raise TemplateError(f"cannot pipe into non-function '{head}'")
        if len(tokens) > 1:
            raise TemplateError(f"unknown template function '{head}'")
        return self.operand(head)

    def operand(self, token: str) -> str:
        if token.startswith("(") and token.endswith(")"):
            return f"({self.pipeline(token[1:-1])})"
        if token.startswith('"'):
            return token
        if token.startswith("`") and token.endswith("`"):
            return json.dumps(token[1:-1])
        if NUMBER_PATTERN.match(token):
            return token
        if token in ("true", "false"):
            return token
        if token == "nil":
            return "none"
        if token == ".":
            return self.dot or "_root"
        if token.startswith("$"):
            name, _, path = token[1:].partition(".")
            if not name:
                return _path("_root", path.split(".") if path else [], root=True)
            return _path(name, path.split(".") if path else [], root=False)
        if token.startswith("."):
            segments = token[1:].split(".")
            if self.dot is None:
                return _path("_root", segments, root=True)
            return _path(self.dot, segments, root=False)
        if token in FILTER_FUNCS:
            return _call(token, [])
        if BARE_PATH_PATTERN.match(token):
            first, *rest = token.split(".")
            return _path(first, rest, root=False)
        raise TemplateError(f"unsupported template operand '{token}'")


def _path(base: str, segments: List[str], root: bool) -> str:
    segments = [s for s in segments if s]
    if root and segments and IDENT_PATTERN.match(segments[0]) and segments[0] not in JINJA_KEYWORDS:
        expr, segments = segments[0], segments[1:]
    else:
        expr = base
    for seg in segments:
        expr += f"[{json.dumps(seg)}]"
    return expr


def _call(name: str, args: List[str]) -> str:
    if name in BINARY_OPS:
        if len(args) < 2:
            raise TemplateError(f"'{name}' needs two arguments")
        op = BINARY_OPS[name]
        if name == "eq" and len(args) > 2:
            return "(" + " or ".join(f"{args[0]} == {a}" for a in args[1:]) + ")"
        return f"({args[0]} {op} {args[1]})"
    if name in ("and", "or"):
        return "(" + f" {name} ".join(args) + ")"
    if name == "not":
        return f"(not {args[0]})"
    if name == "len":
        return f"({args[0]} | length)"
    if name == "index":
        return args[0] + "".join(f"[{a}]" for a in args[1:])
    if name == "printf":
        return f"({args[0]} | format({', '.join(args[1:])}))"
    if name == "print":
        return "(" + " ~ ".join(f"({a})" for a in args) + ")"
    filter_name = FILTER_FUNCS[name]
    if not args:
        raise TemplateError(f"'{name}' needs an argument")
    subject, extra = args[-1], args[:-1]
    if extra:
        return f"({subject} | {filter_name}({', '.join(extra)}))"
    return f"({subject} | {filter_name})"


def _split(text: str, sep: Optional[str]) -> List[str]:
    """Split on ``sep`` (whitespace when None) outside strings and parens."""
    parts: List[str] = []
    buf: List[str] = []
    depth = 0
    quote: Optional[str] = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            buf.append(ch)
            if ch == "\\" and quote == '"' and i + 1 < len(text):
                buf.append(text[i + 1])
                i += 1
            elif ch == quote:
                quote = None
        elif ch in ('"', "`"):
            quote = ch
            buf.append(ch)
        elif ch == "(":
            depth += 1
            buf.append(ch)
        elif ch == ")":
            depth -= 1
            buf.append(ch)
        elif depth == 0 and ((sep is None and ch.isspace()) or ch == sep):
            if sep is not None or buf:
                parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    if quote or depth:
        raise TemplateError(f"unbalanced quotes or parentheses in {text!r}")
    if buf or sep is not None:
        parts.append("".join(buf))
    return [p.strip() for p in parts] if sep is not None else parts


def _literal(text: str) -> str:
    if "{%" in text or "{#" in text:
        return "{% raw %}" + text + "{% endraw %}"
    return text


def translate(template: str) -> str:
    """Translate a dotted-action template into Jinja2 source."""
    return _Translator(template).translate()


# =============================================================================
# Rendering
# =============================================================================

def render_template(template: str, scope: EvalScope, strict: bool = False) -> str:
    """Render a plan template against ``scope``.

    Rendered output that still contains actions (for example vars holding
    templates) is rendered again, up to three passes.

    Raises:
        TemplateError: On syntax errors, or undefined names in strict mode
    """
    if not template or "{{" not in template:
        return template
    context = scope.to_context()
    result = _render_once(template, context, strict)
    for _ in range(MAX_RENDER_PASSES - 1):
        if "{{" not in result:
            break
        try:
            again = _render_once(result, context, strict)
        except TemplateError as e:
            logger.debug(f"Stopping re-render, output is not a template: {e}")
            break
        if again == result:
            break
        result = again
    return result


def render_data(template: str, data: Mapping[str, Any], strict: bool = False) -> str:
    """Render a template whose root (`.`) is ``data`` itself, e.g. a progress map."""
    context: Dict[str, Any] = dict(data)
    context["_root"] = dict(data)
    return _render_once(template, context, strict)


def _render_once(template: str, context: Dict[str, Any], strict: bool) -> str:
    source = translate(template)
    try:
        return _env(strict).from_string(source).render(context)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"template syntax error: {e.message}")
    except jinja2.UndefinedError as e:
        raise TemplateError(f"undefined value in template: {e.message}")
    except jinja2.exceptions.SecurityError as e:
        raise TemplateError(f"template attempted an unsafe operation: {e}")


def render_schema(schema: Schema, scope: EvalScope) -> Schema:
    """Copy of ``schema`` with templated descriptions rendered strictly."""
    rendered = schema.clone()
    _render_descriptions(rendered, scope)
    return rendered


def _render_descriptions(node: Schema, scope: EvalScope) -> None:
    if node.description:
        node.description = render_template(node.description, scope, strict=True)
    for sub in node.properties.values():
        _render_descriptions(sub, scope)
    if node.items is not None:
        _render_descriptions(node.items, scope)
    for sub in node.any_of:
        _render_descriptions(sub, scope)


# =============================================================================
# Expressions
# =============================================================================

# Leading-dot references (".progress.A") are accepted in expressions too.
_DOT_REF_PATTERN = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')|(?<![\w\)\]])\.([A-Za-z_])")


def _normalize_expression(expression: str) -> str:
    return _DOT_REF_PATTERN.sub(lambda m: m.group(1) or m.group(2), expression.strip())


def evaluate_expression(expression: str, scope: EvalScope, extra: Optional[Mapping[str, Any]] = None) -> Any:
    """Evaluate a Jinja2 expression against ``scope`` (plus ``extra`` names)."""
    context = scope.to_context()
    context.update(extra or {})
    try:
        compiled = _LENIENT_ENV.compile_expression(_normalize_expression(expression))
        return compiled(**context)
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"expression syntax error in {expression!r}: {e.message}")
    except jinja2.UndefinedError as e:
        raise TemplateError(f"undefined value in expression {expression!r}: {e.message}")
    except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError) as e:
        raise TemplateError(f"expression {expression!r} failed: {e}")


def evaluate_boolean(expression: str, scope: EvalScope) -> bool:
    result = evaluate_expression(expression, scope)
    if not isinstance(result, bool):
        raise TemplateError(f"expression {expression!r} did not evaluate to a boolean")
    return result


def evaluate_array(expression: str, scope: EvalScope) -> List[Any]:
    result = evaluate_expression(expression, scope)
    if not isinstance(result, (list, tuple)):
        raise TemplateError(f"expression {expression!r} did not evaluate to an array")
    return list(result)


def evaluate_value(value: Any, scope: EvalScope) -> Any:
    """Render string leaves of ``value`` (recursively).

    A string of the exact form ``$(expr)`` is replaced by the typed value of
    the expression. Non-string leaves pass through unchanged.
    """
    if isinstance(value, str):
        match = EXPR_REF_PATTERN.match(value.strip())
        if match:
            return evaluate_expression(match.group(1), scope)
        return render_template(value, scope)
    if isinstance(value, dict):
        return {k: evaluate_value(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate_value(v, scope) for v in value]
    return value


def evaluate_map_values(values: Optional[Dict[str, Any]], scope: EvalScope) -> Optional[Dict[str, Any]]:
    """Evaluate every string leaf of a mapping.

    Keys are evaluated independently against the same scope, so one key
    must not reference a sibling.
    """
    if values is None:
        return None
    return {k: evaluate_value(v, scope) for k, v in values.items()}
