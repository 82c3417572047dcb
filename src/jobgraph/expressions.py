# expressions.py
"""
Gate / output expression language.

    ctx.branch == 'main' && !cancelled()
    needs.pre-deployment.outputs.should-deploy == 'true'
    always() && (needs.staging.result == 'success' || needs.prod.result == 'success')
    matches(ctx.branch, 'release/*')

Expressions are parsed once (compile_expression) and evaluated against a
Scope. Unknown names never raise: they evaluate to UNDEFINED, and every
comparison involving UNDEFINED is False. Malformed text raises
ConfigurationError at compile time.
"""
from __future__ import annotations

import fnmatch
import functools
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ConfigurationError


class _Undefined:
    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __str__(self) -> str:
        return ""


UNDEFINED = _Undefined()

ROOTS = ("ctx", "inputs", "needs", "matrix", "env", "steps", "job")
STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})


# ----------------------------------------------------------------------
# Scope
# ----------------------------------------------------------------------

@dataclass
class Scope:
    """
    Names visible to an expression.

    needs maps job name -> {"result": "success"|..., "outputs": {...}}.
    success/failure default to what `needs` says; step conditions pass them
    explicitly (no earlier step failed / some earlier step failed).
    """
    ctx: Mapping = field(default_factory=dict)
    needs: Mapping = field(default_factory=dict)
    matrix: Mapping = field(default_factory=dict)
    env: Mapping = field(default_factory=dict)
    steps: Mapping = field(default_factory=dict)
    job: Mapping = field(default_factory=dict)
    cancelled: bool = False
    success: Optional[bool] = None
    failure: Optional[bool] = None

    def lookup(self, root: str) -> Any:
        if root == "inputs":
            value = self.ctx.get("inputs") if isinstance(self.ctx, Mapping) else None
            return value if isinstance(value, Mapping) else UNDEFINED
        if root in ROOTS:
            return getattr(self, root)
        return UNDEFINED

    def upstream_success(self) -> bool:
        if self.success is not None:
            return self.success
        return all(_result_of(v) == "success" for v in self.needs.values())

    def upstream_failure(self) -> bool:
        if self.failure is not None:
            return self.failure
        return any(_result_of(v) == "failure" for v in self.needs.values())


def _result_of(entry: Any) -> Any:
    if isinstance(entry, Mapping):
        return entry.get("result", UNDEFINED)
    return UNDEFINED


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------

def to_text(value: Any) -> str:
    """String rendering used for templates and mixed-type comparisons."""
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(_plain(value), sort_keys=True)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if value is UNDEFINED:
        return None
    return value


def truthy(value: Any) -> bool:
    return bool(value)


def _is_scalar_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[float]:
    if _is_scalar_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _equal(a: Any, b: Any) -> bool:
    if type(a) is type(b) or (_is_scalar_number(a) and _is_scalar_number(b)):
        return a == b
    if isinstance(a, str) or isinstance(b, str):
        if a is None or b is None:
            return False
        return to_text(a) == to_text(b)
    if isinstance(a, bool) or isinstance(b, bool):
        return to_text(a) == to_text(b)
    return a == b


def compare(op: str, a: Any, b: Any) -> bool:
    if a is UNDEFINED or b is UNDEFINED:
        return False
    if op == "==":
        return _equal(a, b)
    if op == "!=":
        return not _equal(a, b)

    na, nb = _as_number(a), _as_number(b)
    if na is not None and nb is not None and not (isinstance(a, str) and isinstance(b, str)):
        a, b = na, nb
    try:
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        if op == ">=":
            return a >= b
    except TypeError:
        return False
    raise ConfigurationError(f"Unknown operator {op!r}")


# ----------------------------------------------------------------------
# Functions
# ----------------------------------------------------------------------

def _fn_contains(haystack: Any, needle: Any) -> bool:
    if haystack is UNDEFINED or needle is UNDEFINED:
        return False
    if isinstance(haystack, str):
        return to_text(needle) in haystack
    if isinstance(haystack, (tuple, list)):
        return any(_equal(item, needle) for item in haystack)
    if isinstance(haystack, Mapping):
        return to_text(needle) in haystack
    return False


def _fn_starts_with(value: Any, prefix: Any) -> bool:
    if not isinstance(value, str) or prefix is UNDEFINED:
        return False
    return value.startswith(to_text(prefix))


def _fn_ends_with(value: Any, suffix: Any) -> bool:
    if not isinstance(value, str) or suffix is UNDEFINED:
        return False
    return value.endswith(to_text(suffix))


def _fn_matches(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or pattern is UNDEFINED:
        return False
    return fnmatch.fnmatchcase(value, to_text(pattern))


def _fn_format(fmt: Any, *args: Any) -> str:
    text = to_text(fmt)

    def sub(m: re.Match) -> str:
        idx = int(m.group(1))
        return to_text(args[idx]) if idx < len(args) else m.group(0)

    return re.sub(r"\{(\d+)\}", sub, text)


def _fn_to_json(value: Any) -> str:
    return json.dumps(_plain(value), sort_keys=True)


def _fn_from_json(text: Any) -> Any:
    try:
        return json.loads(to_text(text))
    except json.JSONDecodeError:
        return UNDEFINED


def _fn_join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, (tuple, list)):
        return to_text(sep).join(to_text(i) for i in items)
    return to_text(items)


# name -> (callable, min args, max args); status functions are resolved on the scope
FUNCTIONS: Dict[str, Tuple[Optional[Callable[..., Any]], int, Optional[int]]] = {
    "always": (None, 0, 0),
    "success": (None, 0, 0),
    "failure": (None, 0, 0),
    "cancelled": (None, 0, 0),
    "contains": (_fn_contains, 2, 2),
    "startswith": (_fn_starts_with, 2, 2),
    "endswith": (_fn_ends_with, 2, 2),
    "matches": (_fn_matches, 2, 2),
    "format": (_fn_format, 1, None),
    "tojson": (_fn_to_json, 1, 1),
    "fromjson": (_fn_from_json, 1, 1),
    "join": (_fn_join, 1, 2),
}


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

class Node:
    def eval(self, scope: Scope) -> Any:
        raise NotImplementedError

    def children(self) -> Sequence["Node"]:
        return ()


@dataclass
class Literal(Node):
    value: Any

    def eval(self, scope: Scope) -> Any:
        return self.value


@dataclass
class Path(Node):
    root: str
    parts: List[Node]

    def eval(self, scope: Scope) -> Any:
        value = scope.lookup(self.root)
        for part in self.parts:
            if value is UNDEFINED:
                return UNDEFINED
            key = part.eval(scope)
            value = _member(value, key)
        return value

    def children(self) -> Sequence[Node]:
        return self.parts


def _member(value: Any, key: Any) -> Any:
    if isinstance(value, Mapping):
        if key in value:
            return value[key]
        # outputs declared with hyphens are commonly read with underscores and vice versa
        if isinstance(key, str):
            alt = key.replace("_", "-") if "_" in key else key.replace("-", "_")
            if alt in value:
                return value[alt]
        return UNDEFINED
    if isinstance(value, (tuple, list)) and _is_scalar_number(key):
        idx = int(key)
        if -len(value) <= idx < len(value):
            return value[idx]
    return UNDEFINED


@dataclass
class Not(Node):
    operand: Node

    def eval(self, scope: Scope) -> Any:
        return not truthy(self.operand.eval(scope))

    def children(self) -> Sequence[Node]:
        return (self.operand,)


@dataclass
class BoolOp(Node):
    op: str          # "&&" | "||"
    left: Node
    right: Node

    def eval(self, scope: Scope) -> Any:
        left = self.left.eval(scope)
        if self.op == "&&":
            return left if not truthy(left) else self.right.eval(scope)
        return left if truthy(left) else self.right.eval(scope)

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)


@dataclass
class Compare(Node):
    op: str
    left: Node
    right: Node

    def eval(self, scope: Scope) -> Any:
        return compare(self.op, self.left.eval(scope), self.right.eval(scope))

    def children(self) -> Sequence[Node]:
        return (self.left, self.right)


@dataclass
class Call(Node):
    name: str        # lower-cased
    args: List[Node]

    def eval(self, scope: Scope) -> Any:
        if self.name == "always":
            return True
        if self.name == "success":
            return scope.upstream_success() and not scope.cancelled
        if self.name == "failure":
            return scope.upstream_failure()
        if self.name == "cancelled":
            return scope.cancelled
        fn = FUNCTIONS[self.name][0]
        return fn(*(a.eval(scope) for a in self.args))

    def children(self) -> Sequence[Node]:
        return self.args


# ----------------------------------------------------------------------
# Tokenizer + parser
# ----------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*'|"(?:[^"\\]|\\.)*")
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>!().,\[\]-])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_\-]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise ConfigurationError(f"Unexpected character {source[pos]!r} at {pos} in expression: {source}")
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(kind), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", pos))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.i = 0

    # -- helpers --
    def peek(self) -> _Token:
        return self.tokens[self.i]

    def advance(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def accept(self, *texts: str) -> Optional[_Token]:
        tok = self.peek()
        if tok.kind in ("op", "ident") and tok.text in texts:
            return self.advance()
        return None

    def expect(self, text: str) -> _Token:
        tok = self.accept(text)
        if tok is None:
            self.fail(f"expected {text!r}")
        return tok  # type: ignore[return-value]

    def fail(self, message: str) -> None:
        tok = self.peek()
        found = tok.text or "end of expression"
        raise ConfigurationError(f"Malformed expression {self.source!r}: {message}, found {found!r} at {tok.pos}")

    # -- grammar --
    def parse(self) -> Node:
        if self.peek().kind == "eof":
            self.fail("empty expression")
        node = self.parse_or()
        if self.peek().kind != "eof":
            self.fail("unexpected trailing input")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||", "or"):
            node = BoolOp("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.accept("&&", "and"):
            node = BoolOp("&&", node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.accept("!", "not"):
            return Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        node = self.parse_primary()
        tok = self.accept("==", "!=", "<", "<=", ">", ">=")
        if tok:
            node = Compare(tok.text, node, self.parse_primary())
        return node

    def parse_primary(self) -> Node:
        tok = self.peek()
        if tok.kind == "op" and tok.text == "-":
            self.advance()
            num = self.peek()
            if num.kind != "number":
                self.fail("expected a number after '-'")
            self.advance()
            return Literal(-(float(num.text) if "." in num.text else int(num.text)))
        if tok.kind == "number":
            self.advance()
            return Literal(float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "string":
            self.advance()
            return Literal(_unquote(tok.text))
        if tok.kind == "op" and tok.text == "(":
            self.advance()
            node = self.parse_or()
            self.expect(")")
            return node
        if tok.kind == "ident":
            self.advance()
            if tok.text in _KEYWORDS:
                return Literal(_KEYWORDS[tok.text])
            if self.peek().text == "(" and self.peek().kind == "op":
                return self.parse_call(tok)
            return self.parse_path(tok)
        self.fail("expected a value")
        raise AssertionError("unreachable")

    def parse_call(self, name_tok: _Token) -> Node:
        name = name_tok.text.lower()
        if name not in FUNCTIONS:
            raise ConfigurationError(f"Unknown function {name_tok.text!r} in expression: {self.source}")
        self.expect("(")
        args: List[Node] = []
        if not self.accept(")"):
            args.append(self.parse_or())
            while self.accept(","):
                args.append(self.parse_or())
            self.expect(")")
        _fn, lo, hi = FUNCTIONS[name]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise ConfigurationError(
                f"Function {name_tok.text}() takes {lo if lo == hi else f'{lo}+'} argument(s), "
                f"got {len(args)} in expression: {self.source}"
            )
        return Call(name, args)

    def parse_path(self, root_tok: _Token) -> Node:
        parts: List[Node] = []
        while True:
            if self.accept("."):
                tok = self.advance()
                if tok.kind != "ident":
                    self.i -= 1
                    self.fail("expected a property name after '.'")
                parts.append(Literal(tok.text))
            elif self.accept("["):
                parts.append(self.parse_or())
                self.expect("]")
            else:
                break
        return Path(root_tok.text, parts)


def _unquote(text: str) -> str:
    if text[0] == "'":
        return text[1:-1].replace("''", "'")
    return json.loads(text)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


class Expression:
    """A compiled expression."""

    def __init__(self, source: str, root: Node):
        self.source = source
        self.root = root

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def evaluate(self, scope: Scope) -> Any:
        return self.root.eval(scope)

    @functools.cached_property
    def uses_status_function(self) -> bool:
        """True if the expression decides the upstream gate itself (always(), failure(), ...)."""
        stack: List[Node] = [self.root]
        while stack:
            node = stack.pop()
            if isinstance(node, Call) and node.name in STATUS_FUNCTIONS:
                return True
            stack.extend(node.children())
        return False


@functools.lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    if not isinstance(source, str):
        raise ConfigurationError(f"Expression must be a string, got {type(source).__name__}")
    m = _WRAPPED_RE.match(source)
    text = m.group(1) if m else source
    return Expression(source, _Parser(text.strip()).parse())


def compile_template(template: str) -> List[Expression]:
    """Compile every ${{ }} placeholder of a template (validation only)."""
    return [compile_expression(m.group(1)) for m in _TEMPLATE_RE.finditer(template or "")]


def render(template: str, scope: Scope) -> str:
    """Replace each ${{ expr }} with the text of its value (UNDEFINED -> '')."""
    if not template or "${{" not in template:
        return template
    return _TEMPLATE_RE.sub(lambda m: to_text(compile_expression(m.group(1)).evaluate(scope)), template)


def gate(expression: Optional[str], scope: Scope) -> bool:
    """
    Decide a job/step condition.

    No condition means success(). A condition that calls a status function
    controls the gate alone; any other is evaluated as success() && (cond).
    """
    if expression is None or not str(expression).strip():
        return scope.upstream_success() and not scope.cancelled
    compiled = compile_expression(expression)
    if compiled.uses_status_function:
        return truthy(compiled.evaluate(scope))
    if not scope.upstream_success() or scope.cancelled:
        return False
    return truthy(compiled.evaluate(scope))


def evaluate(
    expression: str,
    context: Mapping,
    upstream_outputs: Optional[Mapping] = None,
    **scope: Any,
) -> Any:
    """
    One-shot evaluation.

    upstream_outputs: job name -> {"result": ..., "outputs": {...}}
    scope: extra roots (matrix=, env=, steps=, job=) and cancelled=.
    """
    compiled = compile_expression(expression)
    return compiled.evaluate(Scope(ctx=context, needs=upstream_outputs or {}, **scope))
