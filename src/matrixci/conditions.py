"""
Guard expressions and `${{ }}` interpolation.

Supported:
  literals      'str' (quote escaped as ''), 42, 1.5, true, false, null
  references    matrix.os, github.event_name, secrets.TOKEN,
                steps.<id>.outputs.<name>, env.NAME, vars.NAME, runner.os
  operators     ! == != < <= > >= && || ( )
  functions     contains(a, b), startsWith(a, b), endsWith(a, b)

Undefined references never raise: they evaluate to UNDEFINED, which is
falsy, and any comparison involving UNDEFINED is false.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ConditionError

logger = logging.getLogger(__name__)


class _Undefined:
    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|<=|>=|&&|\|\||[!<>().,])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    )
    """,
    re.VERBOSE,
)

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

Token = Tuple[str, str]


def _tokenize(expr: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    expr = expr.rstrip()
    while pos < len(expr):
        m = _TOKEN_RE.match(expr, pos)
        if not m or m.end() == pos:
            raise ConditionError(f"unexpected character at {pos}: {expr[pos:pos + 10]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Ref:
    path: Tuple[str, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BinOp:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


class _Parser:
    def __init__(self, tokens: List[Token], source: str):
        self.tokens = tokens
        self.source = source
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        tok = self.peek()
        if tok is None:
            raise ConditionError(f"unexpected end of expression: {self.source!r}")
        self.pos += 1
        return tok

    def expect(self, value: str) -> None:
        kind, text = self.take()
        if text != value:
            raise ConditionError(f"expected {value!r}, got {text!r} in {self.source!r}")

    def parse(self):
        node = self.parse_or()
        if self.peek() is not None:
            raise ConditionError(f"unexpected token {self.peek()[1]!r} in {self.source!r}")
        return node

    def parse_or(self):
        node = self.parse_and()
        while self.peek() == ("op", "||"):
            self.take()
            node = BinOp("||", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_unary()
        while self.peek() == ("op", "&&"):
            self.take()
            node = BinOp("&&", node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.peek() == ("op", "!"):
            self.take()
            return Not(self.parse_unary())
        return self.parse_comparison()

    def parse_comparison(self):
        node = self.parse_primary()
        tok = self.peek()
        if tok is not None and tok[0] == "op" and tok[1] in _COMPARE:
            self.take()
            node = BinOp(tok[1], node, self.parse_primary())
        return node

    def parse_primary(self):
        kind, text = self.take()
        if kind == "string":
            return Literal(text[1:-1].replace("''", "'"))
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "op" and text == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if kind == "ident":
            if text in _KEYWORDS:
                return Literal(_KEYWORDS[text])
            if self.peek() == ("op", "("):
                return self.parse_call(text)
            path = [text]
            while self.peek() == ("op", "."):
                self.take()
                kind, part = self.take()
                if kind not in ("ident", "number"):
                    raise ConditionError(f"bad reference after {'.'.join(path)!r} in {self.source!r}")
                path.append(part)
            return Ref(tuple(path))
        raise ConditionError(f"unexpected token {text!r} in {self.source!r}")

    def parse_call(self, name: str):
        if name.lower() not in _FUNCTIONS:
            raise ConditionError(f"unknown function {name!r}")
        self.expect("(")
        args = []
        if self.peek() != ("op", ")"):
            args.append(self.parse_or())
            while self.peek() == ("op", ","):
                self.take()
                args.append(self.parse_or())
        self.expect(")")
        return Call(name.lower(), tuple(args))


_KEYWORDS = {"true": True, "false": False, "null": None}


def _fold(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return any(_fold(item) == _fold(needle) for item in haystack)
    if isinstance(haystack, str) and isinstance(needle, str):
        return needle.lower() in haystack.lower()
    return False


def _starts_with(value: Any, prefix: Any) -> bool:
    return isinstance(value, str) and isinstance(prefix, str) and value.lower().startswith(prefix.lower())


def _ends_with(value: Any, suffix: Any) -> bool:
    return isinstance(value, str) and isinstance(suffix, str) and value.lower().endswith(suffix.lower())


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": _starts_with,
    "endswith": _ends_with,
}

_COMPARE: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: _fold(a) == _fold(b),
    "!=": lambda a, b: _fold(a) != _fold(b),
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


@lru_cache(maxsize=512)
def parse(expr: str):
    """Parse an expression (optionally wrapped in ${{ }}) into an AST."""
    m = _WRAPPED_RE.match(expr)
    if m:
        expr = m.group(1)
    if not expr.strip():
        raise ConditionError("empty expression")
    return _Parser(_tokenize(expr), expr.strip()).parse()


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _resolve(path: Tuple[str, ...], scope: Mapping[str, Any]) -> Any:
    current: Any = scope
    for part in path:
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return UNDEFINED
    return current


def _eval(node, scope: Mapping[str, Any]) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Ref):
        return _resolve(node.path, scope)
    if isinstance(node, Not):
        return not _eval(node.operand, scope)
    if isinstance(node, Call):
        args = [_eval(a, scope) for a in node.args]
        if len(args) != 2:
            raise ConditionError(f"{node.name}() takes 2 arguments, got {len(args)}")
        return _FUNCTIONS[node.name](*args)
    if isinstance(node, BinOp):
        if node.op == "||":
            left = _eval(node.left, scope)
            return left if left else _eval(node.right, scope)
        if node.op == "&&":
            left = _eval(node.left, scope)
            return _eval(node.right, scope) if left else left
        left = _eval(node.left, scope)
        right = _eval(node.right, scope)
        if left is UNDEFINED or right is UNDEFINED:
            return False
        try:
            return _COMPARE[node.op](left, right)
        except TypeError as e:
            raise ConditionError(f"cannot compare {left!r} {node.op} {right!r}") from e
    raise ConditionError(f"unknown node {node!r}")


def evaluate(expr: str, scope: Mapping[str, Any]) -> Any:
    """Evaluate an expression to a value. Raises ConditionError if malformed."""
    return _eval(parse(expr), scope)


def evaluate_condition(expr: Optional[str], scope: Mapping[str, Any]) -> bool:
    """
    Evaluate a guard. No guard means true; a malformed guard degrades
    to false instead of aborting the pipeline.
    """
    if expr is None:
        return True
    if isinstance(expr, bool):
        return expr
    try:
        return bool(evaluate(expr, scope))
    except ConditionError as e:
        logger.warning("condition %r is malformed, treating as false: %s", expr, e)
        return False


def _render(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(value: Any, scope: Mapping[str, Any]) -> Any:
    """
    Substitute ${{ expr }} occurrences in strings.

    A string that is exactly one expression keeps the expression's value
    type; anything else renders to a string. Non-strings pass through.
    """
    if not isinstance(value, str) or "${{" not in value:
        return value
    whole = _WRAPPED_RE.match(value)
    if whole and "${{" not in whole.group(1):
        result = evaluate(whole.group(1), scope)
        return "" if result is UNDEFINED or result is None else result
    return _TEMPLATE_RE.sub(lambda m: _render(evaluate(m.group(1), scope)), value)
