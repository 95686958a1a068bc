from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import lru_cache
from typing import Any

from workhub.custom_fields.errors import CyclicDependency, DefinitionInvalid
from workhub.custom_fields.graph import topological_order
from workhub.custom_fields.schemas import FieldDefinition, FormulaDiagnostic, FormulaResult
from workhub.custom_fields.values import is_number, values_equal


logger = logging.getLogger("workhub.custom_fields.formula")

MAX_PRECISION = 10


class FormulaSyntaxError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Reference:
    name: str


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True, slots=True)
class Call:
    name: str
    args: tuple["Node", ...]


Node = Literal | Reference | Unary | Binary | Call


_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<number>\d+\.\d*|\.\d+|\d+)
    |(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<braced>\{[^{}]+\})
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>==|!=|<=|>=|&&|\|\||[-+*/%<>!(),=])
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}

# name -> (min args, max args or None)
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "IF": (2, 3),
    "ROUND": (1, 2),
    "CONCAT": (1, None),
    "ABS": (1, 1),
    "MIN": (1, None),
    "MAX": (1, None),
    "SUM": (1, None),
    "AVG": (1, None),
    "COALESCE": (1, None),
    "LEN": (1, 1),
    "UPPER": (1, 1),
    "LOWER": (1, 1),
    "AND": (1, None),
    "OR": (1, None),
    "NOT": (1, 1),
}

_BINARY_LEVELS: tuple[frozenset[str], ...] = (
    frozenset({"||"}),
    frozenset({"&&"}),
    frozenset({"==", "!="}),
    frozenset({"<", "<=", ">", ">="}),
    frozenset({"+", "-"}),
    frozenset({"*", "/", "%"}),
)


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    while position < len(expression):
        match = _TOKEN_RE.match(expression, position)
        if match is None:
            raise FormulaSyntaxError(f"unexpected character {expression[position]!r} at {position}")
        kind = match.lastgroup or ""
        text = match.group()
        position = match.end()
        if kind == "space":
            continue
        if kind == "op" and text == "=":
            text = "=="
        tokens.append((kind, text))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self.tokens = tokens
        self.index = 0

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaSyntaxError("empty expression")
        node = self._binary(0)
        if self.index != len(self.tokens):
            raise FormulaSyntaxError(f"unexpected token {self.tokens[self.index][1]!r}")
        return node

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise FormulaSyntaxError("unexpected end of expression")
        self.index += 1
        return token

    def _expect(self, text: str) -> None:
        kind, value = self._take()
        if kind != "op" or value != text:
            raise FormulaSyntaxError(f"expected {text!r}, found {value!r}")

    def _binary(self, level: int) -> Node:
        if level == len(_BINARY_LEVELS):
            return self._unary()
        node = self._binary(level + 1)
        while True:
            token = self._peek()
            if token is None or token[0] != "op" or token[1] not in _BINARY_LEVELS[level]:
                return node
            self.index += 1
            node = Binary(token[1], node, self._binary(level + 1))

    def _unary(self) -> Node:
        token = self._peek()
        if token is not None and token[0] == "op" and token[1] in {"-", "!"}:
            self.index += 1
            return Unary(token[1], self._unary())
        return self._primary()

    def _primary(self) -> Node:
        kind, text = self._take()
        if kind == "number":
            return Literal(float(text) if "." in text else int(text))
        if kind == "string":
            return Literal(re.sub(r"\\(.)", r"\1", text[1:-1]))
        if kind == "braced":
            name = text[1:-1].strip()
            if not name:
                raise FormulaSyntaxError("empty field reference")
            return Reference(name)
        if kind == "name":
            following = self._peek()
            if following == ("op", "("):
                return self._call(text.upper())
            if text.lower() in _KEYWORDS:
                return Literal(_KEYWORDS[text.lower()])
            return Reference(text)
        if kind == "op" and text == "(":
            node = self._binary(0)
            self._expect(")")
            return node
        raise FormulaSyntaxError(f"unexpected token {text!r}")

    def _call(self, name: str) -> Node:
        if name not in FUNCTION_ARITY:
            raise FormulaSyntaxError(f"unknown function {name}")
        self._expect("(")
        args: list[Node] = []
        if self._peek() != ("op", ")"):
            args.append(self._binary(0))
            while self._peek() == ("op", ","):
                self.index += 1
                args.append(self._binary(0))
        self._expect(")")
        minimum, maximum = FUNCTION_ARITY[name]
        if len(args) < minimum or (maximum is not None and len(args) > maximum):
            raise FormulaSyntaxError(f"{name} takes {minimum}..{maximum or 'n'} arguments, got {len(args)}")
        return Call(name, tuple(args))


@lru_cache(maxsize=512)
def parse_formula(expression: str) -> Node:
    return _Parser(_tokenize(expression)).parse()


def extract_references(node: Node) -> list[str]:
    found: list[str] = []

    def walk(current: Node) -> None:
        if isinstance(current, Reference):
            if current.name not in found:
                found.append(current.name)
        elif isinstance(current, Unary):
            walk(current.operand)
        elif isinstance(current, Binary):
            walk(current.left)
            walk(current.right)
        elif isinstance(current, Call):
            for arg in current.args:
                walk(arg)

    walk(node)
    return found


class _MissingReference(Exception):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


class _EvaluationFailure(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def _number(value: Any, context: str) -> Any:
    if not is_number(value):
        raise _EvaluationFailure("type_error", f"{context} expects a number, got {type(value).__name__}")
    if isinstance(value, Decimal):
        value = float(value)
    if isinstance(value, float) and not math.isfinite(value):
        raise _EvaluationFailure("numeric_overflow", f"{context} got a non-finite number")
    return value


def _flatten(values: Iterable[Any]) -> list[Any]:
    flat: list[Any] = []
    for value in values:
        if isinstance(value, (list, tuple)):
            flat.extend(_flatten(value))
        else:
            flat.append(value)
    return flat


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ", ".join(_to_text(item) for item in value)
    return str(value)


def round_half_up(value: Any, digits: int) -> Any:
    if not -MAX_PRECISION <= digits <= MAX_PRECISION:
        raise _EvaluationFailure("bad_precision", f"ROUND digits must be between {-MAX_PRECISION} and {MAX_PRECISION}")
    quantum = Decimal(1).scaleb(-digits)
    try:
        rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise _EvaluationFailure("numeric_overflow", f"{value!r} cannot be rounded to {digits} digits") from None
    if digits <= 0:
        return int(rounded)
    return float(rounded)


def _truthy(value: Any) -> bool:
    if isinstance(value, (list, tuple, str)):
        return len(value) > 0
    return bool(value)


class _Interpreter:
    def __init__(self, lookup: Callable[[str], Any]) -> None:
        self.lookup = lookup

    def run(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Reference):
            return self.lookup(node.name)
        if isinstance(node, Unary):
            operand = self.run(node.operand)
            if node.op == "-":
                return -_number(operand, "unary -")
            return not _truthy(operand)
        if isinstance(node, Binary):
            return self._binary(node)
        return self._call(node)

    def _binary(self, node: Binary) -> Any:
        op = node.op
        if op == "&&":
            return _truthy(self.run(node.left)) and _truthy(self.run(node.right))
        if op == "||":
            return _truthy(self.run(node.left)) or _truthy(self.run(node.right))

        left = self.run(node.left)
        right = self.run(node.right)
        if op == "==":
            return values_equal(left, right)
        if op == "!=":
            return not values_equal(left, right)
        if op in {"<", "<=", ">", ">="}:
            if not ((is_number(left) and is_number(right)) or (isinstance(left, str) and isinstance(right, str))):
                raise _EvaluationFailure("type_error", f"cannot compare {type(left).__name__} with {type(right).__name__}")
            if op == "<":
                return left < right
            if op == "<=":
                return left <= right
            if op == ">":
                return left > right
            return left >= right
        if op == "+" and isinstance(left, str) and isinstance(right, str):
            return left + right

        left_number = _number(left, op)
        right_number = _number(right, op)
        if op == "+":
            return left_number + right_number
        if op == "-":
            return left_number - right_number
        if op == "*":
            return left_number * right_number
        if right_number == 0:
            raise _EvaluationFailure("division_by_zero", f"division by zero in '{op}'")
        if op == "/":
            return left_number / right_number
        return left_number % right_number

    def _call(self, node: Call) -> Any:
        name = node.name
        if name == "IF":
            condition = _truthy(self.run(node.args[0]))
            if condition:
                return self.run(node.args[1])
            return self.run(node.args[2]) if len(node.args) > 2 else None
        if name == "COALESCE":
            for arg in node.args:
                try:
                    value = self.run(arg)
                except _MissingReference:
                    continue
                if value is not None:
                    return value
            return None
        if name == "AND":
            return all(_truthy(self.run(arg)) for arg in node.args)
        if name == "OR":
            return any(_truthy(self.run(arg)) for arg in node.args)

        args = [self.run(arg) for arg in node.args]
        if name == "NOT":
            return not _truthy(args[0])
        if name == "ROUND":
            digits = int(_number(args[1], "ROUND")) if len(args) > 1 else 0
            return round_half_up(_number(args[0], "ROUND"), digits)
        if name == "CONCAT":
            return "".join(_to_text(arg) for arg in args)
        if name == "ABS":
            return abs(_number(args[0], "ABS"))
        if name == "LEN":
            if not isinstance(args[0], (str, list, tuple)):
                raise _EvaluationFailure("type_error", "LEN expects text or a list")
            return len(args[0])
        if name in {"UPPER", "LOWER"}:
            if not isinstance(args[0], str):
                raise _EvaluationFailure("type_error", f"{name} expects text")
            return args[0].upper() if name == "UPPER" else args[0].lower()

        numbers = [_number(item, name) for item in _flatten(args) if item is not None]
        if name == "SUM":
            return sum(numbers)
        if not numbers:
            return None
        if name == "AVG":
            return sum(numbers) / len(numbers)
        if name == "MIN":
            return min(numbers)
        return max(numbers)


class FormulaEvaluator:
    """Evaluates formula definitions against a value snapshot keyed by field id.

    Identifiers in an expression resolve against the snapshot directly, then through the
    ``api_name`` index of the definitions the evaluator was built with. Failures never raise:
    they come back as ``value=None`` plus diagnostics.
    """

    def __init__(self, definitions: Iterable[FieldDefinition] = ()) -> None:
        self._api_names: dict[str, str] = {}
        for definition in definitions:
            self._api_names.setdefault(definition.api_name, definition.id)

    def evaluate(self, definition: FieldDefinition, values: Mapping[str, Any]) -> FormulaResult:
        if definition.formula is None:
            raise DefinitionInvalid("missing_formula_config", field_id=definition.id)

        try:
            tree = parse_formula(definition.formula.expression)
        except FormulaSyntaxError as exc:
            return FormulaResult(value=None, diagnostics=[FormulaDiagnostic(code="bad_formula", message=str(exc))])

        def lookup(name: str) -> Any:
            if name in values:
                value = values[name]
            elif name in self._api_names and self._api_names[name] in values:
                value = values[self._api_names[name]]
            else:
                raise _MissingReference(name)
            if value is None:
                raise _MissingReference(name)
            return value

        try:
            value = _Interpreter(lookup).run(tree)
            precision = definition.formula.precision
            if precision is not None and is_number(value):
                value = round_half_up(value, precision)
            if isinstance(value, float) and not math.isfinite(value):
                raise _EvaluationFailure("numeric_overflow", "result is not a finite number")
        except OverflowError as exc:
            return FormulaResult(value=None, diagnostics=[FormulaDiagnostic(code="numeric_overflow", message=str(exc))])
        except _MissingReference as exc:
            return FormulaResult(
                value=None,
                diagnostics=[
                    FormulaDiagnostic(
                        code="missing_reference",
                        message=f"reference '{exc.name}' has no value",
                        reference=exc.name,
                    )
                ],
            )
        except _EvaluationFailure as exc:
            return FormulaResult(value=None, diagnostics=[FormulaDiagnostic(code=exc.code, message=exc.message)])
        return FormulaResult(value=value)

    def evaluate_all(
        self,
        definitions: Iterable[FieldDefinition],
        values: Mapping[str, Any],
    ) -> dict[str, FormulaResult]:
        items = list(definitions)
        for definition in items:
            self._api_names.setdefault(definition.api_name, definition.id)

        formulas = {definition.id: definition for definition in items if definition.formula is not None}
        edges = {
            field_id: [dep for dep in definition.formula.dependencies if dep in formulas]
            for field_id, definition in formulas.items()
            if definition.formula is not None
        }

        try:
            order = topological_order(edges)
        except CyclicDependency as exc:
            logger.error("formula.cycle_detected", extra={"cycle": exc.cycle})
            raise

        working = dict(values)
        results: dict[str, FormulaResult] = {}
        for field_id in order:
            result = self.evaluate(formulas[field_id], working)
            results[field_id] = result
            working[field_id] = result.value
        return results
