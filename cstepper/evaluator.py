"""
Expression evaluation for the cstepper interpreter.

Expressions are flat: the token stream is grouped into operands and at most
one binary operator is applied (`left op right`). Operands are

  literal          42   3.5   'a'   "text"
  identifier       x            (arrays decay to their base Address)
  array access     a[i]         (bounds checked, index evaluated recursively)
  call             f(x, y)
  group            ( ... )      (evaluated recursively)
  unary            -e  !e  *e  &e

Longer operand chains evaluate only their first operand and report a
warning.

Calls to user functions are resolved through a Continuation owned by the
calling activation. The first unresolved call in an expression records a
CallRequest and the whole expression evaluates to PENDING; the engine runs
the callee, stores its return value in the continuation, and re-executes
the statement, which then consumes results in call order. Without a
continuation, calls read the per-function last-return cache instead.
"""

from __future__ import annotations
import logging
import math
import operator
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

from .memory import MemoryModel
from .parser import ExprToken, ExprTokenKind, tokenize_expression
from .values import Address, ExecutionError, Value, as_number, truthy

log = logging.getLogger(__name__)

__all__ = [
    "Evaluator", "ExecutionError", "PENDING", "CallRequest", "Continuation",
    "parse_literal",
]


class _Pending:
    """Marker for a value that waits on a callee frame."""

    def __repr__(self):
        return "PENDING"


PENDING = _Pending()


@dataclass
class CallRequest:
    function: str
    args: List[Value]


@dataclass
class Continuation:
    """Call results of the statement an activation is currently executing."""
    results: List[Value] = field(default_factory=list)
    awaiting: Optional[int] = None          # frame id of the callee in flight
    request: Optional[CallRequest] = None
    cursor: int = 0

    def begin(self):
        """Start a (re-)evaluation pass over the current statement."""
        self.cursor = 0
        self.request = None

    def clear(self):
        self.results.clear()
        self.awaiting = None
        self.request = None
        self.cursor = 0

    def deliver(self, frame_id: int, value: Value) -> bool:
        """Record the return value of `frame_id` if this continuation waits on it."""
        if self.awaiting != frame_id:
            return False
        self.results.append(value)
        self.awaiting = None
        return True


# ──────────────────────────────────────────────
# Operands
# ──────────────────────────────────────────────

@dataclass
class _Leaf:
    token: ExprToken

@dataclass
class _Group:
    tokens: List[ExprToken]

@dataclass
class _Unary:
    op: str
    operand: "_Operand"

@dataclass
class _Call:
    name: str
    args: List[List[ExprToken]]

_Operand = Union[_Leaf, _Group, _Unary, _Call]

UNARY_OPS = ("-", "!", "*", "&")


def _is_op(tok: ExprToken, value: str) -> bool:
    return tok.kind == ExprTokenKind.OPERATOR and tok.value == value


def _closing_paren(tokens: List[ExprToken], open_at: int) -> int:
    depth = 0
    for i in range(open_at, len(tokens)):
        if _is_op(tokens[i], "("):
            depth += 1
        elif _is_op(tokens[i], ")"):
            depth -= 1
            if depth == 0:
                return i
    raise ExecutionError("Unbalanced parentheses in expression")


def _split_commas(tokens: List[ExprToken]) -> List[List[ExprToken]]:
    if not tokens:
        return []
    parts: List[List[ExprToken]] = [[]]
    depth = 0
    for tok in tokens:
        if _is_op(tok, "("):
            depth += 1
        elif _is_op(tok, ")"):
            depth -= 1
        elif _is_op(tok, ",") and depth == 0:
            parts.append([])
            continue
        parts[-1].append(tok)
    return parts


def _read_operand(tokens: List[ExprToken], i: int, text: str):
    """Parse one operand starting at tokens[i]; returns (operand, next index)."""
    if i >= len(tokens):
        raise ExecutionError(f"Incomplete expression: {text!r}")
    tok = tokens[i]

    if tok.kind == ExprTokenKind.UNKNOWN:
        raise ExecutionError(f"Unknown token {tok.value!r} in expression {text!r}")

    if tok.kind == ExprTokenKind.OPERATOR:
        if tok.value == "(":
            close = _closing_paren(tokens, i)
            return _Group(tokens[i + 1:close]), close + 1
        if tok.value in UNARY_OPS:
            operand, nxt = _read_operand(tokens, i + 1, text)
            return _Unary(tok.value, operand), nxt
        raise ExecutionError(f"Unexpected operator {tok.value!r} in expression {text!r}")

    if (tok.kind == ExprTokenKind.IDENT and i + 1 < len(tokens)
            and _is_op(tokens[i + 1], "(")):
        close = _closing_paren(tokens, i + 1)
        return _Call(tok.value, _split_commas(tokens[i + 2:close])), close + 1

    return _Leaf(tok), i + 1


def _group_operands(tokens: List[ExprToken], text: str):
    operands: List[_Operand] = []
    operators: List[str] = []
    i = 0
    while i < len(tokens):
        operand, i = _read_operand(tokens, i, text)
        operands.append(operand)
        if i < len(tokens):
            tok = tokens[i]
            if tok.kind != ExprTokenKind.OPERATOR or tok.value in ("(", ")"):
                raise ExecutionError(f"Expected operator at {tok.value!r} in {text!r}")
            operators.append(tok.value)
            i += 1
            if i >= len(tokens):
                raise ExecutionError(f"Incomplete expression: {text!r}")
    return operands, operators


# ──────────────────────────────────────────────
# Binary operators
# ──────────────────────────────────────────────

def _c_div(a, b):
    if b == 0:
        raise ExecutionError("Division by zero")
    if isinstance(a, int) and isinstance(b, int):
        q = abs(a) // abs(b)
        return q if (a < 0) == (b < 0) else -q
    return a / b


def _c_mod(a, b):
    if b == 0:
        raise ExecutionError("Modulo by zero")
    if isinstance(a, int) and isinstance(b, int):
        return a - b * _c_div(a, b)
    return math.fmod(a, b)


def _pow(a, b):
    if a == 0 and b < 0:
        raise ExecutionError("Division by zero")
    return a ** b


ARITHMETIC: Dict[str, Callable] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _c_div,
    "%": _c_mod,
    "**": _pow,
}

COMPARISON: Dict[str, Callable] = {
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}


def apply_operator(op: str, left: Value, right: Value) -> Value:
    """Apply a binary operator with C semantics (truncating / and %, 1/0 truth)."""
    if op == "&&":
        return int(truthy(left) and truthy(right))
    if op == "||":
        return int(truthy(left) or truthy(right))
    if op in COMPARISON:
        if isinstance(left, str) and isinstance(right, str):
            return int(COMPARISON[op](left, right))
        return int(COMPARISON[op](as_number(left), as_number(right)))
    if op not in ARITHMETIC:
        raise ExecutionError(f"Unsupported operator {op!r}")

    # Pointer arithmetic scales by the element size
    if isinstance(left, Address) or isinstance(right, Address):
        if op == "+" and isinstance(left, Address) and isinstance(right, int):
            return left.offset(right)
        if op == "+" and isinstance(right, Address) and isinstance(left, int):
            return right.offset(left)
        if op == "-" and isinstance(left, Address) and isinstance(right, int):
            return left.offset(-right)
        if op == "-" and isinstance(left, Address) and isinstance(right, Address):
            return (left.value - right.value) // left.stride
        raise ExecutionError(f"Invalid operands to '{op}' on a pointer")

    if isinstance(left, str) or isinstance(right, str):
        left, right = as_number(left), as_number(right)
    return ARITHMETIC[op](left, right)


# ──────────────────────────────────────────────
# Literals
# ──────────────────────────────────────────────

def parse_literal(text: Optional[str]) -> Optional[Value]:
    """Value of a plain literal (`5`, `-2.5`, `'a'`, `"hi"`), else None."""
    if text is None:
        return None
    tokens = tokenize_expression(text)
    negate = False
    if len(tokens) == 2 and _is_op(tokens[0], "-") and tokens[1].kind == ExprTokenKind.NUMBER:
        negate = True
        tokens = tokens[1:]
    if len(tokens) != 1:
        return None
    tok = tokens[0]
    if tok.kind == ExprTokenKind.NUMBER:
        return -tok.value if negate else tok.value
    if tok.kind in (ExprTokenKind.CHAR, ExprTokenKind.STRING):
        return tok.value
    return None


# ──────────────────────────────────────────────
# Evaluator
# ──────────────────────────────────────────────

class Evaluator:
    """Evaluates expression text against a MemoryModel.

    `is_function(name)` tells user functions apart from unknown names;
    `report(line)` receives diagnostic lines for the output log.
    """

    CONSTANTS = {"NULL": 0, "true": 1, "false": 0}

    def __init__(self, memory: MemoryModel,
                 is_function: Callable[[str], bool],
                 report: Callable[[str], None],
                 builtins=()):
        self.memory = memory
        self.is_function = is_function
        self.report = report
        self.builtins = set(builtins)

    def evaluate(self, text: str, scope: str,
                 continuation: Optional[Continuation] = None) -> Union[Value, _Pending]:
        """Evaluate `text` in `scope`; PENDING when a callee must run first."""
        tokens = tokenize_expression(text)
        if not tokens:
            raise ExecutionError("Empty expression")
        for tok in tokens:
            if tok.kind == ExprTokenKind.UNKNOWN:
                raise ExecutionError(f"Unknown token {tok.value!r} in expression {text!r}")
        return self._eval_tokens(tokens, scope, continuation, text)

    def _eval_tokens(self, tokens: List[ExprToken], scope: str,
                     cont: Optional[Continuation], text: str):
        operands, operators = _group_operands(tokens, text)

        if len(operands) == 1:
            return self._operand(operands[0], scope, cont, text)

        if len(operands) == 2:
            op = operators[0]
            if op in ("=", ","):
                raise ExecutionError(f"Unsupported operator {op!r} in expression {text!r}")
            left = self._operand(operands[0], scope, cont, text)
            right = self._operand(operands[1], scope, cont, text)
            if left is PENDING or right is PENDING:
                return PENDING
            return apply_operator(op, left, right)

        self.report(f"Warning: expression '{text}' has more than one operator; "
                    f"only the first operand was evaluated")
        return self._operand(operands[0], scope, cont, text)

    def _operand(self, operand: _Operand, scope: str,
                 cont: Optional[Continuation], text: str):
        if isinstance(operand, _Group):
            if not operand.tokens:
                raise ExecutionError(f"Empty parentheses in expression {text!r}")
            return self._eval_tokens(operand.tokens, scope, cont, text)
        if isinstance(operand, _Unary):
            return self._unary(operand, scope, cont, text)
        if isinstance(operand, _Call):
            return self._call(operand, scope, cont, text)
        return self._leaf(operand.token, scope, cont)

    def _leaf(self, tok: ExprToken, scope: str, cont: Optional[Continuation]):
        if tok.kind in (ExprTokenKind.NUMBER, ExprTokenKind.CHAR, ExprTokenKind.STRING):
            return tok.value

        if tok.kind == ExprTokenKind.IDENT:
            value = self.memory.get_variable(tok.value, scope)
            if value is None:
                if tok.value in self.CONSTANTS:
                    return self.CONSTANTS[tok.value]
                raise ExecutionError(f"Undeclared identifier '{tok.value}'")
            return value

        if tok.kind == ExprTokenKind.ARRAY_ACCESS:
            index = self.evaluate(tok.index, scope, cont)
            if index is PENDING:
                return PENDING
            return self.read_indexed(tok.value, index, scope)

        raise ExecutionError(f"Unknown token {tok.value!r} in expression")

    def element_address(self, name: str, index: Value, scope: str):
        """(address, stride) of `name[index]`, bounds checked for arrays."""
        if isinstance(index, float) or isinstance(index, str) or isinstance(index, Address):
            raise ExecutionError(f"Array index for '{name}' must be an integer, got {index!r}")
        symbol = self.memory.resolve(name, scope)
        if symbol is None:
            raise ExecutionError(f"Undeclared array '{name}'")
        if symbol.is_array:
            if not 0 <= index < symbol.length:
                raise ExecutionError(
                    f"Index out of bounds: {name}[{index}] (size {symbol.length})")
            return symbol.element_address(index), symbol.element_size
        if symbol.is_pointer:
            base = self.memory.read_address(symbol.address)
            return base.offset(index).value, base.stride
        raise ExecutionError(f"'{name}' is not an array or pointer")

    def read_indexed(self, name: str, index: Value, scope: str) -> Value:
        address, _ = self.element_address(name, index, scope)
        return self.memory.read_address(address)

    def _unary(self, operand: _Unary, scope: str, cont: Optional[Continuation], text: str):
        if operand.op == "&":
            return self._address_of(operand.operand, scope, cont, text)

        value = self._operand(operand.operand, scope, cont, text)
        if value is PENDING:
            return PENDING
        if operand.op == "-":
            if isinstance(value, (Address, str)):
                raise ExecutionError(f"Cannot negate {value!r}")
            return -value
        if operand.op == "!":
            return int(not truthy(value))
        # "*": dereference
        if isinstance(value, str):
            raise ExecutionError(f"Cannot dereference {value!r}")
        return self.memory.read_address(as_number(value))

    def _address_of(self, operand: _Operand, scope: str, cont: Optional[Continuation], text: str):
        if not isinstance(operand, _Leaf):
            raise ExecutionError(f"Cannot take the address of an expression in {text!r}")
        tok = operand.token
        if tok.kind == ExprTokenKind.IDENT:
            symbol = self.memory.resolve(tok.value, scope)
            if symbol is None:
                raise ExecutionError(f"Undeclared identifier '{tok.value}'")
            return Address(symbol.address, symbol.element_size)
        if tok.kind == ExprTokenKind.ARRAY_ACCESS:
            index = self.evaluate(tok.index, scope, cont)
            if index is PENDING:
                return PENDING
            address, stride = self.element_address(tok.value, index, scope)
            return Address(address, stride)
        raise ExecutionError(f"Cannot take the address of {tok.value!r}")

    def _call(self, call: _Call, scope: str, cont: Optional[Continuation], text: str):
        if call.name in self.builtins:
            self.report(f"Warning: '{call.name}' cannot be used inside an expression; using 0")
            return 0

        if not self.is_function(call.name):
            self.report(f"Error: undefined function '{call.name}'")
            return 0

        if cont is None:
            cached = self.memory.last_return_values.get(call.name, 0)
            log.debug("call %s resolved from last-return cache: %r", call.name, cached)
            return cached

        # Arguments first: nested calls take earlier result slots
        args: List[Value] = []
        for arg_tokens in call.args:
            value = self._eval_tokens(arg_tokens, scope, cont, text)
            if value is PENDING:
                return PENDING
            args.append(value)

        if cont.cursor < len(cont.results):
            value = cont.results[cont.cursor]
            cont.cursor += 1
            return value

        if cont.request is None:
            cont.request = CallRequest(call.name, args)
        return PENDING
