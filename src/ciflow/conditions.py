# conditions.py
"""
Run conditions and matrix expressions.

Conditions decide whether a job runs once every instance of every job it
needs has finished. They come in four shapes:

  - None                  -> the default `success()`
  - bool                  -> used as-is (`False` is "never run")
  - str                   -> an expression, e.g. "${{ always() }}" or
                             "failure() || needs.lint.result == 'skipped'"
  - callable(ctx) -> bool -> Python-authored condition

The expression language is the small subset of GitHub Actions expressions
that CI configurations use for `if:` and `continue-on-error:`:

  literals      true false null 12 1.5 'text' ('' escapes a quote)
  functions     success() failure() always() cancelled()
  contexts      needs.<job>.result   matrix.<axis>
  operators     !  ==  !=  &&  ||  ( )

An expression that calls none of the status functions is treated as
`success() && (<expr>)`, so a skipped or failed dependency still skips the
job unless the job opts out with `always()` or `failure()`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .model import Conclusion, Job, MatrixValue

STATUS_FUNCTIONS = ("success", "failure", "always", "cancelled")

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(?P<body>.*)\}\}\s*$", re.DOTALL)
_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?(?![A-Za-z_]))
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>==|!=|&&|\|\||!|\(|\)|\.)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


class ExpressionError(ValueError):
    """An expression does not parse or references something it cannot see."""


# ---------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ConditionContext:
    """
    What a condition can see: the conclusion of each needed job, whether
    cancellation was requested, and (for matrix expressions) the instance's
    matrix assignment.
    """
    needs: Mapping[str, Conclusion] = field(default_factory=dict)
    cancelled_requested: bool = False
    matrix: Mapping[str, MatrixValue] = field(default_factory=dict)

    def success(self) -> bool:
        return all(c is Conclusion.SUCCESS for c in self.needs.values())

    def failure(self) -> bool:
        return any(c is Conclusion.FAILURE for c in self.needs.values())

    def cancelled(self) -> bool:
        if self.cancelled_requested:
            return True
        return any(c is Conclusion.CANCELLED for c in self.needs.values())

    def always(self) -> bool:
        return True

    def result(self, job: str) -> Optional[str]:
        conclusion = self.needs.get(job)
        return conclusion.value if conclusion is not None else None


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Node:
    def eval(self, ctx: ConditionContext) -> Any:
        raise NotImplementedError

    def walk(self) -> Iterator["Node"]:
        yield self


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def eval(self, ctx: ConditionContext) -> Any:
        return self.value


@dataclass(frozen=True)
class Ref(Node):
    path: Tuple[str, ...]

    def eval(self, ctx: ConditionContext) -> Any:
        root, rest = self.path[0], self.path[1:]
        if root == "matrix" and len(rest) == 1:
            return ctx.matrix.get(rest[0])
        if root == "needs" and len(rest) == 2 and rest[1] == "result":
            return ctx.result(rest[0])
        return None


@dataclass(frozen=True)
class Call(Node):
    name: str

    def eval(self, ctx: ConditionContext) -> Any:
        return getattr(ctx, self.name)()


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def eval(self, ctx: ConditionContext) -> Any:
        return not _truthy(self.operand.eval(ctx))

    def walk(self) -> Iterator[Node]:
        yield self
        yield from self.operand.walk()


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

    def eval(self, ctx: ConditionContext) -> Any:
        if self.op == "&&":
            left = self.left.eval(ctx)
            return self.right.eval(ctx) if _truthy(left) else left
        if self.op == "||":
            left = self.left.eval(ctx)
            return left if _truthy(left) else self.right.eval(ctx)

        equal = _loose_eq(self.left.eval(ctx), self.right.eval(ctx))
        return equal if self.op == "==" else not equal

    def walk(self) -> Iterator[Node]:
        yield self
        yield from self.left.walk()
        yield from self.right.walk()


def _truthy(value: Any) -> bool:
    return bool(value)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip() or 0)
    raise ValueError(value)


def _loose_eq(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.casefold() == b.casefold()
    if a is None or b is None:
        return a is b
    try:
        return _to_number(a) == _to_number(b)
    except ValueError:
        return False


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if m is None:
            raise ExpressionError(f"unexpected character {source[pos]!r} at offset {pos}")
        pos = m.end()
        kind = m.lastgroup
        if kind != "ws":
            tokens.append((kind, m.group(kind)))
    return tokens


class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, value: str | None = None) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ExpressionError("unexpected end of expression")
        if value is not None and tok[1] != value:
            raise ExpressionError(f"expected {value!r}, got {tok[1]!r}")
        self.pos += 1
        return tok

    def at(self, value: str) -> bool:
        tok = self.peek()
        return tok is not None and tok[0] == "op" and tok[1] == value

    def parse(self) -> Node:
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionError(f"unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.at("||"):
            self.take()
            node = Binary("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_not()
        while self.at("&&"):
            self.take()
            node = Binary("&&", node, self.parse_not())
        return node

    def parse_not(self) -> Node:
        if self.at("!"):
            self.take()
            return Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self) -> Node:
        node = self.parse_primary()
        if self.at("==") or self.at("!="):
            op = self.take()[1]
            node = Binary(op, node, self.parse_primary())
        return node

    def parse_primary(self) -> Node:
        kind, value = self.take()
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.take(")")
            return node
        if kind == "number":
            return Literal(float(value) if "." in value else int(value))
        if kind == "string":
            return Literal(value[1:-1].replace("''", "'"))
        if kind != "ident":
            raise ExpressionError(f"unexpected token {value!r}")

        lowered = value.lower()
        if lowered in ("true", "false"):
            return Literal(lowered == "true")
        if lowered == "null":
            return Literal(None)

        if self.at("("):
            if lowered not in STATUS_FUNCTIONS:
                raise ExpressionError(f"unknown function {value}()")
            self.take("(")
            self.take(")")
            return Call(lowered)

        path = [value]
        while self.at("."):
            self.take()
            kind, part = self.take()
            if kind not in ("ident", "number"):
                raise ExpressionError(f"bad property name {part!r}")
            path.append(part)
        return Ref(tuple(path))


@dataclass(frozen=True)
class Expression:
    source: str
    root: Node

    @property
    def calls_status_function(self) -> bool:
        return any(isinstance(n, Call) for n in self.root.walk())

    def refs(self) -> List[Tuple[str, ...]]:
        return [n.path for n in self.root.walk() if isinstance(n, Ref)]

    def evaluate(self, ctx: ConditionContext) -> Any:
        return self.root.eval(ctx)


def parse(source: str) -> Expression:
    """Parse an expression, with or without the ${{ }} wrapper."""
    m = _WRAPPED_RE.match(source)
    body = m.group("body") if m else source
    if not body.strip():
        raise ExpressionError("empty expression")
    return Expression(source=source, root=_Parser(_tokenize(body)).parse())


# ---------------------------------------------------------------------
# Validation (runs before anything is scheduled)
# ---------------------------------------------------------------------

def check_condition(job: Job) -> None:
    """Raise ExpressionError if the job's condition cannot be evaluated."""
    if not isinstance(job.condition, str):
        return
    expr = parse(job.condition)
    for path in expr.refs():
        if path[0] == "needs":
            if len(path) != 3 or path[2] != "result":
                raise ExpressionError(f"unsupported reference {'.'.join(path)!r}")
            if path[1] not in job.needs:
                raise ExpressionError(f"'{path[1]}' is not in needs of '{job.name}'")
        elif path[0] == "matrix":
            raise ExpressionError("job conditions are evaluated per job; matrix is not available")
        else:
            raise ExpressionError(f"unknown context '{path[0]}'")


def check_continue_on_error(job: Job) -> None:
    """Raise ExpressionError if continue-on-error cannot be resolved per instance."""
    if not isinstance(job.continue_on_error, str):
        return
    expr = parse(job.continue_on_error)
    if expr.calls_status_function:
        raise ExpressionError("status functions are not available in continue-on-error")
    for path in expr.refs():
        if path[0] != "matrix" or len(path) != 2:
            raise ExpressionError(f"only matrix.<axis> may be referenced, got {'.'.join(path)!r}")
        if path[1] not in job.matrix:
            raise ExpressionError(f"unknown matrix axis '{path[1]}'")


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def evaluate_condition(
    job: Job,
    needs: Mapping[str, Conclusion],
    cancelled: bool = False,
) -> bool:
    """
    Decide whether `job` runs, given the conclusion of every job it needs.

    Called once per job, after the fan-in barrier.
    """
    ctx = ConditionContext(
        needs={name: needs[name] for name in job.needs},
        cancelled_requested=cancelled,
    )
    cond = job.condition

    if cond is None:
        return ctx.success()
    if isinstance(cond, bool):
        # a literal true still waits for success(); only a status function opts out
        return cond and ctx.success()
    if isinstance(cond, str):
        expr = parse(cond)
        if not expr.calls_status_function and not ctx.success():
            return False
        return _truthy(expr.evaluate(ctx))
    if callable(cond):
        return bool(cond(ctx))

    raise TypeError(f"Job '{job.name}': unsupported condition type {type(cond).__name__}")


def resolve_continue_on_error(job: Job, matrix: Dict[str, MatrixValue]) -> bool:
    """Evaluate the job's continue-on-error setting for one matrix cell."""
    spec = job.continue_on_error
    if isinstance(spec, bool):
        return spec
    if spec is None:
        return False
    if isinstance(spec, str):
        return _truthy(parse(spec).evaluate(ConditionContext(matrix=matrix)))
    if callable(spec):
        return bool(spec(dict(matrix)))

    raise TypeError(
        f"Job '{job.name}': unsupported continue_on_error type {type(spec).__name__}"
    )
