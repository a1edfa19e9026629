"""
Conditions — predicate language for cell-level and step-level gating.

Expressions follow the workflow ``if:`` style::

    matrix.os != 'macos' || matrix['python-version'] != '7'
    os == 'windows' && !(arch == 'x86')

The ``matrix.`` prefix is optional.  A comparison against an attribute
the cell does not carry is false, whichever operator is used.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from wheel_matrix.core.axes import MatrixCell
from wheel_matrix.core.errors import ConditionError

logger = logging.getLogger(__name__)


# ── AST ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Literal:
    value: bool


@dataclass(frozen=True)
class Compare:
    attr: str
    value: str
    negate: bool = False


@dataclass(frozen=True)
class Present:
    """Bare reference: true when the attribute exists and is non-empty."""
    attr: str


@dataclass(frozen=True)
class Not:
    operand: "ConditionExpr"


@dataclass(frozen=True)
class And:
    operands: Tuple["ConditionExpr", ...]


@dataclass(frozen=True)
class Or:
    operands: Tuple["ConditionExpr", ...]


ConditionExpr = Union[Literal, Compare, Present, Not, And, Or]

ALWAYS = Literal(True)
NEVER = Literal(False)


def equals(attr: str, value) -> Compare:
    return Compare(attr, str(value))


def not_equals(attr: str, value) -> Compare:
    return Compare(attr, str(value), negate=True)


def all_of(*operands: ConditionExpr) -> And:
    return And(tuple(operands))


def any_of(*operands: ConditionExpr) -> Or:
    return Or(tuple(operands))


# ── Evaluation ───────────────────────────────────────────────────────────────

def evaluate(expr: ConditionExpr, cell: MatrixCell) -> bool:
    """Evaluate ``expr`` against ``cell``.  Pure and total."""
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, Compare):
        actual = cell.lookup(expr.attr)
        if actual is None:
            return False
        return (actual == expr.value) != expr.negate
    if isinstance(expr, Present):
        return bool(cell.lookup(expr.attr))
    if isinstance(expr, Not):
        return not evaluate(expr.operand, cell)
    if isinstance(expr, And):
        return all(evaluate(op, cell) for op in expr.operands)
    if isinstance(expr, Or):
        return any(evaluate(op, cell) for op in expr.operands)
    raise TypeError(f"not a condition expression: {expr!r}")


def references(expr: ConditionExpr) -> FrozenSet[str]:
    """Every attribute name the expression reads."""
    if isinstance(expr, (Compare, Present)):
        return frozenset({expr.attr})
    if isinstance(expr, Not):
        return references(expr.operand)
    if isinstance(expr, (And, Or)):
        out: FrozenSet[str] = frozenset()
        for op in expr.operands:
            out |= references(op)
        return out
    return frozenset()


def render(expr: ConditionExpr) -> str:
    """Canonical text form (used in logs and receipts)."""
    if isinstance(expr, Literal):
        return "true" if expr.value else "false"
    if isinstance(expr, Compare):
        op = "!=" if expr.negate else "=="
        return f"{expr.attr} {op} '{expr.value}'"
    if isinstance(expr, Present):
        return expr.attr
    if isinstance(expr, Not):
        return f"!({render(expr.operand)})"
    joiner = " && " if isinstance(expr, And) else " || "
    return "(" + joiner.join(render(op) for op in expr.operands) + ")"


# ── Parser ───────────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<op>==|!=|&&|\|\||!|\(|\))
      | (?P<str>'[^']*'|"[^"]*")
      | (?P<ref>matrix\[\s*(?:'[^']*'|"[^"]*")\s*\]|[A-Za-z_][A-Za-z0-9_.\-]*)
      | (?P<num>\d+(?:\.\d+)*)
    )
    """,
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise ConditionError(f"unexpected input at {pos} in condition {text!r}")
        pos = m.end()
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "str":
            value = value[1:-1]
        elif kind == "ref":
            if value.startswith("matrix["):
                value = value[value.index("[") + 1:value.rindex("]")].strip()[1:-1]
            elif value.startswith("matrix."):
                value = value[len("matrix."):]
            if value in ("true", "false"):
                kind = "bool"
        tokens.append((kind, value))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        tok = self.peek()
        if tok is None:
            raise ConditionError(f"unexpected end of condition {self.text!r}")
        self.pos += 1
        return tok

    def accept(self, op: str) -> bool:
        tok = self.peek()
        if tok == ("op", op):
            self.pos += 1
            return True
        return False

    def parse(self) -> ConditionExpr:
        expr = self.parse_or()
        if self.peek() is not None:
            raise ConditionError(f"trailing input {self.peek()[1]!r} in condition {self.text!r}")
        return expr

    def parse_or(self) -> ConditionExpr:
        operands = [self.parse_and()]
        while self.accept("||"):
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def parse_and(self) -> ConditionExpr:
        operands = [self.parse_unary()]
        while self.accept("&&"):
            operands.append(self.parse_unary())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def parse_unary(self) -> ConditionExpr:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> ConditionExpr:
        if self.accept("("):
            expr = self.parse_or()
            if not self.accept(")"):
                raise ConditionError(f"missing ')' in condition {self.text!r}")
            return expr

        kind, value = self.take()
        if kind == "bool":
            return Literal(value == "true")
        if kind == "op":
            raise ConditionError(f"unexpected {value!r} in condition {self.text!r}")

        tok = self.peek()
        if tok in (("op", "=="), ("op", "!=")):
            self.pos += 1
            other_kind, other_value = self.take()
            negate = tok[1] == "!="
            if kind == "ref" and other_kind in ("str", "num", "bool"):
                return Compare(value, other_value, negate)
            if other_kind == "ref" and kind in ("str", "num"):
                return Compare(other_value, value, negate)
            raise ConditionError(
                f"comparison needs one attribute and one literal in {self.text!r}"
            )
        if kind == "ref":
            return Present(value)
        raise ConditionError(f"bare literal {value!r} in condition {self.text!r}")


def parse_condition(source: Union[str, bool, None]) -> ConditionExpr:
    """Parse a condition; None / empty string mean "always"."""
    if source is None:
        return ALWAYS
    if isinstance(source, bool):
        return Literal(source)
    if not source.strip():
        return ALWAYS
    return _Parser(source).parse()


# ── Engine ───────────────────────────────────────────────────────────────────

class ConditionEngine:
    """
    Checks expressions against the attribute vocabulary of a matrix and
    memoises evaluation per (expression, cell id).
    """

    def __init__(self, known_attributes: Iterable[str]):
        self.known_attributes = frozenset(known_attributes)
        self._cache: Dict[Tuple[ConditionExpr, str], bool] = {}

    def check(self, expr: ConditionExpr, where: str = "condition") -> ConditionExpr:
        unknown = sorted(references(expr) - self.known_attributes)
        if unknown:
            raise ConditionError(f"{where} references unknown attributes {unknown}")
        return expr

    def compile(self, source: Union[str, bool, None], where: str = "condition") -> ConditionExpr:
        return self.check(parse_condition(source), where)

    def evaluate(self, expr: ConditionExpr, cell: MatrixCell) -> bool:
        key = (expr, cell.id)
        cached = self._cache.get(key)
        if cached is None:
            cached = evaluate(expr, cell)
            self._cache[key] = cached
        return cached
