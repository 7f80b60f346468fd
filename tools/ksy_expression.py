#!/usr/bin/env python3
"""
ksy_expression.py - Integer expression language for sizes, positions and conditions

Grammar (lowest precedence first):
    comparison := additive [('==' | '!=' | '<' | '<=' | '>' | '>=') additive]
    additive   := term (('+' | '-') term)*
    term       := unary (('*' | '/') unary)*
    unary      := ('+' | '-') unary | primary
    primary    := '(' comparison ')' | number | identifier
    number     := 0x.. | 0b.. | 0o.. | decimal
    identifier := [A-Za-z_$][A-Za-z0-9_$.]*

Comparisons yield 1 or 0. Division is true division; a result with no
fractional part comes back as int. Anything malformed or unresolvable
evaluates to None, never to a partial value.

Usage:
    from ksy_expression import evaluate

    size = evaluate('header.length - 4', env, ctx)
    if size is None:
        ...  # unresolved
"""

import logging
import math
import re
from typing import Any, Callable, Iterator, Mapping, Optional, Union

from ksy_context import ParseContext, ParseEnvironment, make_node_id
from ksy_errors import ExpressionError


logger = logging.getLogger(__name__)

Number = Union[int, float]
Resolver = Callable[[str], Optional[Number]]

ROOT_PREFIXES = ('$root.', '_root.')

_NUMBER_RE = re.compile(r'0[xX][0-9a-fA-F]+|0[bB][01]+|0[oO][0-7]+|[0-9]+')
_COMPARISONS = ('==', '!=', '<=', '>=', '<', '>')


class ExpressionSyntaxError(Exception):
    """Internal signal; never escapes ExpressionParser.parse()."""


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize(value: Number) -> Number:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class ExpressionParser:
    """Recursive-descent evaluator over a single expression string."""

    def __init__(self, expr: str, resolver: Resolver):
        self.expr = expr
        self.resolver = resolver
        self.index = 0

    def parse(self) -> Optional[Number]:
        try:
            value = self._parse_comparison()
            self._skip_whitespace()
            if self.index != len(self.expr):
                return None
            return _normalize(value)
        except (ExpressionSyntaxError, ZeroDivisionError, OverflowError):
            return None

    def _parse_comparison(self) -> Number:
        value = self._parse_expression()
        self._skip_whitespace()
        for op in _COMPARISONS:
            if self.expr.startswith(op, self.index):
                self.index += len(op)
                rhs = self._parse_expression()
                return 1 if _compare(op, value, rhs) else 0
        return value

    def _parse_expression(self) -> Number:
        value = self._parse_term()
        while True:
            self._skip_whitespace()
            op = self._peek()
            if op in ('+', '-'):
                self.index += 1
                rhs = self._parse_term()
                value = value + rhs if op == '+' else value - rhs
            else:
                return value

    def _parse_term(self) -> Number:
        value = self._parse_unary()
        while True:
            self._skip_whitespace()
            op = self._peek()
            if op in ('*', '/'):
                self.index += 1
                rhs = self._parse_unary()
                value = value * rhs if op == '*' else value / rhs
            else:
                return value

    def _parse_unary(self) -> Number:
        self._skip_whitespace()
        op = self._peek()
        if op in ('+', '-'):
            self.index += 1
            value = self._parse_unary()
            return value if op == '+' else -value
        return self._parse_primary()

    def _parse_primary(self) -> Number:
        self._skip_whitespace()
        ch = self._peek()
        if ch == '(':
            self.index += 1
            value = self._parse_comparison()
            self._skip_whitespace()
            if self._peek() != ')':
                raise ExpressionSyntaxError("Unmatched parenthesis")
            self.index += 1
            return value
        if ch is not None and ch.isdigit():
            return self._parse_number()
        if ch is not None and (ch.isalpha() or ch in '_$'):
            identifier = self._parse_identifier()
            resolved = self.resolver(identifier)
            if resolved is not None:
                return resolved
            raise ExpressionSyntaxError(f"Unresolved identifier '{identifier}'")
        raise ExpressionSyntaxError(f"Unexpected token at {self.index}")

    def _parse_number(self) -> int:
        match = _NUMBER_RE.match(self.expr, self.index)
        if not match:
            raise ExpressionSyntaxError("Invalid number")
        self.index = match.end()
        text = match.group(0)
        return int(text) if text.isdigit() else int(text, 0)

    def _parse_identifier(self) -> str:
        start = self.index
        while self.index < len(self.expr):
            ch = self.expr[self.index]
            if ch.isalnum() or ch in '_$.':
                self.index += 1
            else:
                break
        return self.expr[start:self.index]

    def _skip_whitespace(self) -> None:
        while self.index < len(self.expr) and self.expr[self.index].isspace():
            self.index += 1

    def _peek(self) -> Optional[str]:
        if self.index < len(self.expr):
            return self.expr[self.index]
        return None


def _compare(op: str, lhs: Number, rhs: Number) -> bool:
    if op == '==':
        return lhs == rhs
    if op == '!=':
        return lhs != rhs
    if op == '<':
        return lhs < rhs
    if op == '<=':
        return lhs <= rhs
    if op == '>':
        return lhs > rhs
    return lhs >= rhs


def resolve_scope_value(path: str, scope: Mapping[str, Any]) -> Any:
    """Walk a dotted path through nested mappings, None when absent."""
    current: Any = scope
    for part in (p for p in path.split('.') if p):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return None
    return current


def _candidates(identifier: str, env: ParseEnvironment, ctx: ParseContext) -> Iterator[str]:
    for prefix in ROOT_PREFIXES:
        if identifier.startswith(prefix):
            remainder = identifier[len(prefix):]
            if remainder:
                root_path = ctx.root_path or env.schema.root_id
                yield f"{root_path}.{remainder}"
                yield remainder
            return
    if ctx.path:
        yield make_node_id(ctx.path + (identifier,))
        if len(ctx.path) > 1:
            yield make_node_id(ctx.path[:-1] + (identifier,))
    yield identifier


def resolve_identifier(identifier: str, env: ParseEnvironment,
                       ctx: ParseContext) -> Optional[Number]:
    """Resolve a name against the value table and the local scope."""
    identifier = identifier.strip()
    if not identifier:
        return None
    if identifier == '_io.size':
        return env.size
    if identifier == '_io.pos':
        return ctx.offset
    if identifier == '_io.eof':
        return 1 if ctx.offset >= env.size else 0

    seen = set()
    for candidate in _candidates(identifier, env, ctx):
        if candidate in seen:
            continue
        seen.add(candidate)
        value = env.values.get(candidate)
        if is_number(value):
            return value
        value = resolve_scope_value(candidate, ctx.scope)
        if is_number(value):
            return value
    return None


def evaluate(expr: Any, env: ParseEnvironment, ctx: ParseContext) -> Optional[Number]:
    """
    Evaluate an expression in the given parse context.

    Args:
        expr: Literal number, expression string, or None.
        env: Environment holding the computed-value table.
        ctx: Context providing path, offset and local scope.

    Returns:
        The numeric result, or None when unresolved or malformed.
    """
    if expr is None:
        return None
    if isinstance(expr, bool):
        return int(expr)
    if is_number(expr):
        return expr
    if not isinstance(expr, str):
        return None
    value = ExpressionParser(expr, lambda name: resolve_identifier(name, env, ctx)).parse()
    if value is None:
        logger.debug("Expression %r unresolved at %s", expr, ctx.node_id())
    return value


def require_int(expr: Any, env: ParseEnvironment, ctx: ParseContext,
                what: str, node_path: Optional[str] = None) -> int:
    """Evaluate an expression that must produce an integer."""
    value = evaluate(expr, env, ctx)
    if value is None:
        raise ExpressionError(f"Cannot evaluate {what} expression {expr!r}", node_path)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ExpressionError(f"{what} expression {expr!r} is not finite ({value})",
                                  node_path)
        if not value.is_integer():
            raise ExpressionError(f"{what} expression {expr!r} is not an integer ({value})",
                                  node_path)
        value = int(value)
    return value
