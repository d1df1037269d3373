"""
Formula Expression Engine.

Evaluates the small formula language used by categories and objects:

    {territories} * 2 + max({bonus}, 0)

Supports:
- Numbers: 3, 2.5
- References: {name} - a category or object, resolved through callbacks
- Operators: + - * / ^ (^ binds tightest, all left-associative)
- Parentheses and comma-separated function arguments
- Math functions: max, min, sum, avg, round, abs, floor, ceil
- Context functions: state, owns, round(), phase(), if

Pipeline: tokenize -> unary rewrite -> shunting-yard to postfix -> stack
evaluation. The engine knows nothing about game data; everything outside
the formula text arrives through an ExpressionContext.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Union
import math


class FormulaError(Exception):
    """Base class for formula failures."""


class FormulaSyntaxError(FormulaError):
    """The formula text is malformed."""


class FormulaRuntimeError(FormulaError):
    """The formula is well formed but cannot be computed."""


class TokenType(Enum):
    NUMBER = "number"
    REFERENCE = "reference"
    OPERATOR = "operator"
    FUNCTION = "function"
    PAREN = "paren"
    COMMA = "comma"


@dataclass(frozen=True)
class Token:
    """A lexical token. Function tokens in postfix output carry their argument count."""
    type: TokenType
    value: str
    arg_count: int = 0


@dataclass(frozen=True)
class Reference:
    """An unresolved {name} on the evaluation stack."""
    name: str


StackValue = Union[float, Reference]

OPERATORS = "+-*/^"
DIGITS = "0123456789."
PRECEDENCE = {"+": 1, "-": 1, "*": 2, "/": 2, "^": 3}

# Numeric encoding returned by state()
STATE_CODES = {"inactive": 0.0, "active": 1.0, "owned": 2.0, "discarded": -1.0}


def _round_half_up(value: float, decimals: float = 0) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def _avg(*args: float) -> float:
    return sum(args) / len(args)


# name -> (function, min args, max args or None for variadic)
MATH_FUNCTIONS: dict[str, tuple[Callable[..., float], int, int | None]] = {
    "max": (max, 1, None),
    "min": (min, 1, None),
    "sum": (lambda *args: float(sum(args)), 1, None),
    "avg": (_avg, 1, None),
    "round": (_round_half_up, 1, 2),
    "abs": (abs, 1, 1),
    "floor": (lambda v: float(math.floor(v)), 1, 1),
    "ceil": (lambda v: float(math.ceil(v)), 1, 1),
}

SPECIAL_FUNCTIONS = frozenset({"state", "owns", "round", "phase", "if"})


@dataclass
class ExpressionContext:
    """
    Callbacks the evaluator uses to reach outside the formula.

    - resolve_category: category total by name or id (misses return 0)
    - resolve_object: object value by name or id, None when unknown
    - get_object_state / owns_object / get_round_index / get_phase_id:
      enable the matching special functions when provided
    """
    resolve_category: Callable[[str], float] = field(default=lambda name: 0.0)
    resolve_object: Callable[[str], float | None] | None = None
    get_object_state: Callable[[str], str] | None = None
    owns_object: Callable[[str, str | None], bool] | None = None
    get_round_index: Callable[[], int] | None = None
    get_phase_id: Callable[[], str | None] | None = None

    def resolve(self, name: str) -> float:
        """Resolve a reference: objects first, then categories."""
        if self.resolve_object is not None:
            value = self.resolve_object(name)
            if value is not None:
                return float(value)
        return float(self.resolve_category(name))


def tokenize(formula: str) -> list[Token]:
    """Split formula text into tokens."""
    tokens: list[Token] = []
    i = 0
    n = len(formula)

    while i < n:
        char = formula[i]

        if char.isspace():
            i += 1
            continue

        if char in DIGITS:
            start = i
            while i < n and formula[i] in DIGITS:
                i += 1
            tokens.append(Token(TokenType.NUMBER, formula[start:i]))
            continue

        if char == "{":
            end = formula.find("}", i + 1)
            if end == -1:
                # Unterminated reference runs to the end of the formula
                tokens.append(Token(TokenType.REFERENCE, formula[i + 1:]))
                break
            tokens.append(Token(TokenType.REFERENCE, formula[i + 1:end]))
            i = end + 1
            continue

        if char in OPERATORS:
            tokens.append(Token(TokenType.OPERATOR, char))
            i += 1
            continue

        if char in "()":
            tokens.append(Token(TokenType.PAREN, char))
            i += 1
            continue

        if char == ",":
            tokens.append(Token(TokenType.COMMA, char))
            i += 1
            continue

        if char.isascii() and char.isalpha():
            start = i
            while i < n and formula[i].isascii() and (formula[i].isalnum() or formula[i] == "_"):
                i += 1
            tokens.append(Token(TokenType.FUNCTION, formula[start:i]))
            continue

        raise FormulaSyntaxError(f"Unexpected character: {char}")

    return tokens


def rewrite_unary(tokens: list[Token]) -> list[Token]:
    """
    Rewrite unary signs.

    A sign is unary when not preceded by a number, a reference or ")".
    Unary minus becomes "0 -", unary plus is dropped.
    """
    result: list[Token] = []
    for i, token in enumerate(tokens):
        if token.type == TokenType.OPERATOR and token.value in "+-":
            prev = tokens[i - 1] if i > 0 else None
            is_unary = prev is None or (
                prev.type not in (TokenType.NUMBER, TokenType.REFERENCE)
                and not (prev.type == TokenType.PAREN and prev.value == ")")
            )
            if is_unary:
                if token.value == "-":
                    result.append(Token(TokenType.NUMBER, "0"))
                    result.append(token)
                continue
        result.append(token)
    return result


@dataclass
class _ParenFrame:
    is_call: bool
    commas: int = 0


def to_postfix(tokens: list[Token]) -> list[Token]:
    """Convert infix tokens to postfix (Shunting-Yard), counting function arguments."""
    output: list[Token] = []
    operators: list[Token] = []
    frames: list[_ParenFrame] = []
    prev: Token | None = None

    for token in tokens:
        if prev is not None and prev.type == TokenType.FUNCTION and token.value != "(":
            raise FormulaSyntaxError(f"Expected '(' after function {prev.value}")

        if token.type in (TokenType.NUMBER, TokenType.REFERENCE):
            output.append(token)

        elif token.type == TokenType.FUNCTION:
            operators.append(token)

        elif token.type == TokenType.OPERATOR:
            # >= makes equal precedence pop first: left-associative, ^ included
            while (
                operators
                and operators[-1].type == TokenType.OPERATOR
                and PRECEDENCE[operators[-1].value] >= PRECEDENCE[token.value]
            ):
                output.append(operators.pop())
            operators.append(token)

        elif token.value == "(":
            frames.append(_ParenFrame(is_call=prev is not None and prev.type == TokenType.FUNCTION))
            operators.append(token)

        elif token.value == ")":
            if not frames:
                raise FormulaSyntaxError("Unmatched closing parenthesis")
            while operators and operators[-1].value != "(":
                output.append(operators.pop())
            operators.pop()
            frame = frames.pop()
            if frame.is_call:
                if prev is not None and prev.type == TokenType.COMMA:
                    raise FormulaSyntaxError("Missing function argument")
                empty = prev is not None and prev.type == TokenType.PAREN and prev.value == "("
                arg_count = 0 if empty else frame.commas + 1
                func = operators.pop()
                output.append(Token(TokenType.FUNCTION, func.value, arg_count))

        elif token.type == TokenType.COMMA:
            if not frames or not frames[-1].is_call:
                raise FormulaSyntaxError("Unexpected comma outside function call")
            if prev is not None and (
                prev.type == TokenType.COMMA
                or (prev.type == TokenType.PAREN and prev.value == "(")
            ):
                raise FormulaSyntaxError("Missing function argument")
            while operators and operators[-1].value != "(":
                output.append(operators.pop())
            frames[-1].commas += 1

        prev = token

    if prev is not None and prev.type == TokenType.FUNCTION:
        raise FormulaSyntaxError(f"Expected '(' after function {prev.value}")
    if frames:
        raise FormulaSyntaxError("Unmatched opening parenthesis")

    while operators:
        output.append(operators.pop())

    return output


class ExpressionEvaluator:
    """
    Evaluates postfix token streams against an ExpressionContext.

    Stack values are numbers or References. References stay unresolved
    until something needs their number, so state() and owns() can read
    the name instead.
    """

    def __init__(self, context: ExpressionContext | None = None):
        self.context = context or ExpressionContext()

    def evaluate(self, formula: str) -> float:
        """
        Evaluate formula text.

        Raises:
            FormulaSyntaxError: malformed formula
            FormulaRuntimeError: formula cannot be computed
        """
        if not formula or not formula.strip():
            raise FormulaSyntaxError("Empty formula")
        tokens = tokenize(formula.strip())
        if not tokens:
            raise FormulaSyntaxError("No tokens found")
        return self.evaluate_postfix(to_postfix(rewrite_unary(tokens)))

    def evaluate_postfix(self, postfix: list[Token]) -> float:
        stack: list[StackValue] = []

        for token in postfix:
            if token.type == TokenType.NUMBER:
                stack.append(self._parse_number(token.value))
            elif token.type == TokenType.REFERENCE:
                stack.append(Reference(token.value))
            elif token.type == TokenType.OPERATOR:
                if len(stack) < 2:
                    raise FormulaRuntimeError(f"Not enough operands for operator {token.value}")
                b = self._number(stack.pop())
                a = self._number(stack.pop())
                stack.append(self._apply_operator(token.value, a, b))
            elif token.type == TokenType.FUNCTION:
                if len(stack) < token.arg_count:
                    raise FormulaRuntimeError(f"Not enough arguments for function {token.value}")
                args = stack[len(stack) - token.arg_count:]
                del stack[len(stack) - token.arg_count:]
                stack.append(self._call_function(token.value, args))

        if len(stack) != 1:
            raise FormulaRuntimeError("Invalid expression")
        return self._number(stack[0])

    def _parse_number(self, text: str) -> float:
        try:
            return float(text)
        except ValueError:
            raise FormulaSyntaxError(f"Invalid number: {text}") from None

    def _number(self, value: StackValue) -> float:
        if isinstance(value, Reference):
            return self.context.resolve(value.name)
        return value

    def _apply_operator(self, op: str, a: float, b: float) -> float:
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0:
                raise FormulaRuntimeError("Division by zero")
            return a / b
        if op == "^":
            try:
                return math.pow(a, b)
            except (ValueError, OverflowError) as e:
                raise FormulaRuntimeError(f"Cannot compute {a} ^ {b}: {e}") from None
        raise FormulaRuntimeError(f"Unknown operator: {op}")

    def _call_function(self, name: str, args: list[StackValue]) -> float:
        func_name = name.lower()
        ctx = self.context

        if func_name == "state" and ctx.get_object_state is not None:
            if len(args) != 1:
                raise FormulaRuntimeError("state() requires one argument")
            if not isinstance(args[0], Reference):
                raise FormulaRuntimeError("state() requires an object reference as argument")
            return STATE_CODES.get(ctx.get_object_state(args[0].name), 0.0)

        if func_name == "owns" and ctx.owns_object is not None:
            if len(args) not in (1, 2):
                raise FormulaRuntimeError("owns() requires one or two arguments")
            object_name = self._name_of(args[0])
            player_id = self._name_of(args[1]) if len(args) == 2 else None
            return 1.0 if ctx.owns_object(object_name, player_id) else 0.0

        if func_name == "round" and not args and ctx.get_round_index is not None:
            return float(ctx.get_round_index())

        if func_name == "phase" and not args and ctx.get_phase_id is not None:
            return 1.0 if ctx.get_phase_id() else 0.0

        if func_name == "if":
            if len(args) != 3:
                raise FormulaRuntimeError(
                    "if() requires three arguments: condition, trueValue, falseValue"
                )
            condition, true_value, false_value = (self._number(a) for a in args)
            return true_value if condition != 0 else false_value

        if func_name not in MATH_FUNCTIONS:
            if func_name in SPECIAL_FUNCTIONS:
                raise FormulaRuntimeError(f"Function {name}() is not available in this context")
            raise FormulaSyntaxError(f"Unknown function: {name}")

        func, min_args, max_args = MATH_FUNCTIONS[func_name]
        if len(args) < min_args:
            raise FormulaRuntimeError(f"Function {name} requires at least one argument")
        if max_args is not None and len(args) > max_args:
            raise FormulaRuntimeError(f"Function {name} takes at most {max_args} argument(s)")
        values = [self._number(a) for a in args]
        try:
            return float(func(*values))
        except (ValueError, OverflowError) as e:
            raise FormulaRuntimeError(f"Function {name} failed: {e}") from None

    def _name_of(self, value: StackValue) -> str:
        if isinstance(value, Reference):
            return value.name
        if float(value).is_integer():
            return str(int(value))
        return str(value)


@dataclass(frozen=True)
class FormulaValidation:
    valid: bool
    error: str | None = None


def evaluate(formula: str, context: ExpressionContext | None = None) -> float:
    """
    Evaluate a formula.

    Args:
        formula: Formula text
        context: Resolver callbacks (references resolve to 0 without one)

    Returns:
        The numeric result

    Raises:
        FormulaError on any syntax or runtime failure
    """
    return ExpressionEvaluator(context).evaluate(formula)


def validate(formula: str) -> FormulaValidation:
    """
    Check formula syntax without executing it.

    Only tokenization, parenthesis balance, empty references and known
    function names are checked. Never raises.
    """
    if not formula or not formula.strip():
        return FormulaValidation(False, "Formula cannot be empty")

    try:
        tokens = tokenize(formula.strip())
    except FormulaError as e:
        return FormulaValidation(False, str(e))
    if not tokens:
        return FormulaValidation(False, "No valid tokens found")

    depth = 0
    for token in tokens:
        if token.type == TokenType.PAREN:
            depth += 1 if token.value == "(" else -1
            if depth < 0:
                return FormulaValidation(False, "Unmatched closing parenthesis")
    if depth != 0:
        return FormulaValidation(False, "Unmatched opening parenthesis")

    for token in tokens:
        if token.type == TokenType.REFERENCE and not token.value:
            return FormulaValidation(False, "Empty object reference")
        if token.type == TokenType.FUNCTION:
            name = token.value.lower()
            if name not in MATH_FUNCTIONS and name not in SPECIAL_FUNCTIONS:
                return FormulaValidation(False, f"Unknown function: {token.value}")

    return FormulaValidation(True)


def extract_references(formula: str) -> set[str]:
    """Names of all {references} in a formula. Empty on parse failure."""
    try:
        tokens = tokenize((formula or "").strip())
    except FormulaError:
        return set()
    return {t.value for t in tokens if t.type == TokenType.REFERENCE}


# Convenience function
def evaluate_expression(
    formula: str,
    references: dict[str, float] | None = None,
    round_index: int | None = None,
) -> float:
    """
    Evaluate a formula against a flat name -> value mapping.

    Lookup is case-insensitive; unknown names resolve to 0. Used by the
    authoring tools where no session exists yet.
    """
    values = {k.lower(): float(v) for k, v in (references or {}).items()}
    context = ExpressionContext(
        resolve_category=lambda name: values.get(name.lower(), 0.0),
        get_round_index=(lambda: round_index) if round_index is not None else None,
    )
    return evaluate(formula, context)
