"""
Expression evaluator tests.

Tests cover:
  - Literals, identifiers and constants
  - C integer division and modulo, division by zero
  - Comparison / logical operators producing 1 or 0
  - Array access with bounds checks, pointer arithmetic, & and *
  - The single-operator rule and its warning
  - Call resolution through continuations and the last-return cache
"""

import pytest

from cstepper.evaluator import (
    PENDING, CallRequest, Continuation, Evaluator, ExecutionError,
    apply_operator, parse_literal,
)
from cstepper.memory import MemoryModel
from cstepper.values import Address


class Env:
    def __init__(self):
        self.mem = MemoryModel()
        self.lines = []
        self.ev = Evaluator(self.mem, lambda name: name in ("f", "g"),
                            self.lines.append, builtins=("printf",))

    def __call__(self, text, scope="global", cont=None):
        return self.ev.evaluate(text, scope, cont)


@pytest.fixture
def env():
    return Env()


# ─── Literals and names ─────────────────────

class TestOperands:
    def test_literals(self, env):
        assert env("42") == 42
        assert env("2.5") == 2.5
        assert env("'a'") == 97
        assert env('"hi"') == "hi"

    def test_identifier(self, env):
        env.mem.declare_scalar("x", "int", 7)
        assert env("x") == 7

    def test_constants(self, env):
        assert env("NULL") == 0
        assert env("true") == 1

    def test_undeclared(self, env):
        with pytest.raises(ExecutionError, match="Undeclared identifier 'ghost'"):
            env("ghost + 1")

    def test_unknown_token(self, env):
        with pytest.raises(ExecutionError, match="Unknown token"):
            env("x # y")

    def test_empty(self, env):
        with pytest.raises(ExecutionError):
            env("   ")

    def test_parentheses(self, env):
        assert env("(2 + 3) * 4") == 20
        assert env("((7))") == 7

    def test_unary(self, env):
        env.mem.declare_scalar("x", "int", 3)
        assert env("-x") == -3
        assert env("!x") == 0
        assert env("!0") == 1


# ─── Arithmetic ─────────────────────

class TestArithmetic:
    def test_integer_division_truncates(self, env):
        assert env("7 / 2") == 3
        assert env("-7 / 2") == -3
        assert env("7 / -2") == -3

    def test_modulo_sign_follows_dividend(self, env):
        assert env("7 % 3") == 1
        assert env("-7 % 2") == -1

    def test_float_division(self, env):
        assert env("7.0 / 2") == 3.5

    def test_division_by_zero(self, env):
        with pytest.raises(ExecutionError, match="Division by zero"):
            env("1 / 0")

    def test_modulo_by_zero(self, env):
        with pytest.raises(ExecutionError, match="Modulo by zero"):
            env("7 % 0")

    def test_power(self, env):
        assert env("2 ** 10") == 1024

    def test_comparisons_are_ints(self, env):
        assert env("3 < 4") == 1
        assert env("3 >= 4") == 0
        assert env("2 == 2.0") == 1

    def test_logical(self, env):
        assert env("1 && 0") == 0
        assert env("0 || 5") == 1

    def test_char_arithmetic(self, env):
        assert env("'a' + 1") == 98

    def test_assignment_operator_rejected(self, env):
        env.mem.declare_scalar("x", "int")
        with pytest.raises(ExecutionError, match="Unsupported operator"):
            env("x = 1")

    def test_more_than_one_operator_warns(self, env):
        assert env("1 + 2 + 3") == 1
        assert len(env.lines) == 1
        assert env.lines[0].startswith("Warning: expression '1 + 2 + 3'")


# ─── Arrays and pointers ─────────────────────

class TestArraysAndPointers:
    @pytest.fixture
    def arr(self, env):
        base = env.mem.declare_array("a", "int", 3, [10, 20, 30])
        env.mem.declare_scalar("i", "int", 1)
        return base

    def test_index(self, env, arr):
        assert env("a[0]") == 10
        assert env("a[i + 1]") == 30
        assert env("a[i] * 2") == 40

    def test_out_of_bounds(self, env, arr):
        with pytest.raises(ExecutionError, match=r"Index out of bounds: a\[5\] \(size 3\)"):
            env("a[5]")
        with pytest.raises(ExecutionError, match="out of bounds"):
            env("a[-1]")

    def test_non_integer_index(self, env, arr):
        with pytest.raises(ExecutionError, match="must be an integer"):
            env("a[1.5]")

    def test_array_decays(self, env, arr):
        assert env("a") == Address(arr, 4)

    def test_address_of(self, env, arr):
        x = env.mem.declare_scalar("x", "int", 5)
        assert env("&x") == Address(x, 4)
        assert env("&a[1]") == Address(arr + 4, 4)

    def test_pointer_arithmetic(self, env, arr):
        env.mem.declare_scalar("p", "int*", Address(arr, 4))
        env.mem.declare_scalar("q", "int*", Address(arr + 8, 4))
        assert env("p + 1") == Address(arr + 4, 4)
        assert env("q - 1") == Address(arr + 4, 4)
        assert env("q - p") == 2
        assert env("*(p + 1)") == 20
        assert env("p[2]") == 30

    def test_deref(self, env):
        x = env.mem.declare_scalar("x", "int", 5)
        env.mem.declare_scalar("p", "int*", Address(x, 4))
        assert env("*p") == 5
        assert env("*p + 1") == 6

    def test_null_deref(self, env):
        env.mem.declare_scalar("p", "int*")
        with pytest.raises(ExecutionError, match="Invalid memory access at 0x0"):
            env("*p")

    def test_pointer_multiply_rejected(self):
        with pytest.raises(ExecutionError):
            apply_operator("*", Address(0x1000, 4), 2)


# ─── Calls ─────────────────────

class TestCalls:
    def test_undefined_function_reports(self, env):
        assert env("nope(1) + 2") == 2
        assert env.lines == ["Error: undefined function 'nope'"]

    def test_builtin_in_expression(self, env):
        assert env('printf("x")') == 0
        assert env.lines[0].startswith("Warning: 'printf'")

    def test_cache_resolution(self, env):
        assert env("f(1) + 1") == 1
        env.mem.last_return_values["f"] = 9
        assert env("f(1) + 1") == 10

    def test_continuation_requests_in_order(self, env):
        cont = Continuation()
        cont.begin()
        assert env("f(2) + g(3)", cont=cont) is PENDING
        assert cont.request == CallRequest("f", [2])

        cont.results.append(10)
        cont.begin()
        assert env("f(2) + g(3)", cont=cont) is PENDING
        assert cont.request == CallRequest("g", [3])

        cont.results.append(5)
        cont.begin()
        assert env("f(2) + g(3)", cont=cont) == 15

    def test_nested_call_arguments_first(self, env):
        cont = Continuation()
        cont.begin()
        assert env("f(g(1))", cont=cont) is PENDING
        assert cont.request == CallRequest("g", [1])

        cont.results.append(7)
        cont.begin()
        assert env("f(g(1))", cont=cont) is PENDING
        assert cont.request == CallRequest("f", [7])

        cont.results.append(3)
        cont.begin()
        assert env("f(g(1))", cont=cont) == 3

    def test_deliver_only_to_awaited_frame(self):
        cont = Continuation(awaiting=4)
        assert not cont.deliver(3, 1)
        assert cont.deliver(4, 2)
        assert cont.results == [2]
        assert cont.awaiting is None

    def test_clear(self):
        cont = Continuation(results=[1], awaiting=2, cursor=1)
        cont.clear()
        assert (cont.results, cont.awaiting, cont.cursor) == ([], None, 0)


# ─── Literal detection ─────────────────────

class TestParseLiteral:
    def test_literals(self):
        assert parse_literal("5") == 5
        assert parse_literal("-2.5") == -2.5
        assert parse_literal("'a'") == 97
        assert parse_literal('"hi"') == "hi"

    def test_not_literals(self):
        assert parse_literal("x") is None
        assert parse_literal("1 + 2") is None
        assert parse_literal(None) is None
