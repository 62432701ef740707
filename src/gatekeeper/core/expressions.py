"""
Key templates and guard conditions.

Two small languages are supported over the invocation context map:

Key templates
    Literal text with `#name` markers, optionally followed by attribute or
    key access (`#user.id`). `#p0` / `#a0` address positional arguments.

        "song:#song_id"          -> "song:42"
        "#request.path:#p0"      -> "/play:42"

Guard conditions
    A boolean Python expression evaluated against the context map with a
    restricted AST walker (no calls, no private attributes). `#` markers,
    `&&`, `||` and `!` are accepted for convenience.

        "#role != 'admin'"
        "hour >= 9 and hour < 18"
"""

import ast
import operator
import re
from typing import Any, Callable

from gatekeeper.core.exceptions import ExpressionError

_MARKER = re.compile(r"#([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)")
_POSITIONAL = re.compile(r"^[pa](\d+)$")
# Splits a condition into code and quoted literals (odd indices)
_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")

_COMPARATORS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_BINARY: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}


def has_markers(template: str) -> bool:
    return bool(_MARKER.search(template))


def _lookup(name: str, context: dict[str, Any]) -> Any:
    if name in context:
        return context[name]
    positional = _POSITIONAL.match(name)
    if positional:
        args = context.get("args") or ()
        index = int(positional.group(1))
        if index < len(args):
            return args[index]
    raise ExpressionError(f"unknown variable {name!r}")


def _member(value: Any, attr: str) -> Any:
    if attr.startswith("_"):
        raise ExpressionError(f"access to private attribute {attr!r} is not allowed")
    if isinstance(value, dict):
        if attr in value:
            return value[attr]
        raise ExpressionError(f"missing key {attr!r}")
    try:
        return getattr(value, attr)
    except AttributeError as exc:
        raise ExpressionError(f"missing attribute {attr!r}") from exc


class ExpressionEvaluator:
    """
    Resolves key templates and evaluates guard conditions.

    Failures are raised as ExpressionError; callers decide the fallback
    (literal key, fail-open guard).
    """

    def resolve_template(self, template: str, context: dict[str, Any]) -> str:
        def substitute(match: re.Match) -> str:
            head, *path = match.group(1).split(".")
            value = _lookup(head, context)
            for attr in path:
                value = _member(value, attr)
            if value is None:
                raise ExpressionError(f"{match.group(0)} resolved to None")
            return str(value)

        try:
            return _MARKER.sub(substitute, template)
        except ExpressionError:
            raise
        except Exception as exc:
            raise ExpressionError(f"template {template!r} failed: {exc}") from exc

    def evaluate_condition(
        self,
        condition: str | Callable[[dict[str, Any]], bool],
        context: dict[str, Any],
    ) -> bool:
        if callable(condition):
            try:
                return bool(condition(context))
            except Exception as exc:
                raise ExpressionError(f"condition callable failed: {exc}") from exc

        source = self._normalize(condition)
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as exc:
            raise ExpressionError(f"invalid condition {condition!r}: {exc.msg}") from exc
        except ValueError as exc:
            raise ExpressionError(f"invalid condition {condition!r}: {exc}") from exc
        try:
            return bool(self._eval(tree.body, context))
        except ExpressionError:
            raise
        except Exception as exc:
            raise ExpressionError(f"condition {condition!r} failed: {exc}") from exc

    @staticmethod
    def _normalize(expression: str) -> str:
        parts = _STRING_LITERAL.split(expression)
        for index in range(0, len(parts), 2):
            code = _MARKER.sub(r"\1", parts[index])
            code = code.replace("&&", " and ").replace("||", " or ")
            parts[index] = re.sub(r"!(?!=)", " not ", code)
        return "".join(parts).strip()

    def _eval(self, node: ast.AST, context: dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in ("true", "false", "null"):
                return {"true": True, "false": False, "null": None}[node.id]
            return _lookup(node.id, context)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval(value, context)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, context)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, context)
            if isinstance(node.op, ast.Not):
                return not operand
            try:
                if isinstance(node.op, ast.USub):
                    return -operand
                if isinstance(node.op, ast.UAdd):
                    return +operand
            except TypeError as exc:
                raise ExpressionError(f"bad operand {operand!r}") from exc

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, context)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, context)
                try:
                    if not _COMPARATORS[type(op)](left, right):
                        return False
                except TypeError as exc:
                    raise ExpressionError(f"cannot compare {left!r} and {right!r}") from exc
                left = right
            return True

        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
            try:
                return _BINARY[type(node.op)](
                    self._eval(node.left, context), self._eval(node.right, context)
                )
            except (TypeError, ZeroDivisionError) as exc:
                raise ExpressionError(str(exc)) from exc

        if isinstance(node, ast.Attribute):
            return _member(self._eval(node.value, context), node.attr)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, context)
            index = self._eval(node.slice, context)
            try:
                return container[index]
            except (KeyError, IndexError, TypeError) as exc:
                raise ExpressionError(f"cannot index {container!r} with {index!r}") from exc

        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            return [self._eval(item, context) for item in node.elts]

        raise ExpressionError(f"unsupported expression element: {type(node).__name__}")
