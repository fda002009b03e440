"""
Interpreter engine tests.

Tests cover:
  - Declarations visible right after their step
  - Arrays, strings, pointers and globals
  - Control flow: if/else chains, while, for, break, continue
  - Calls: recursion through frames, the legacy last-return cache
  - printf / puts formatting
  - Fatal errors vs. warnings, step limits
  - Run-state machine (reset, pause/resume, step after DONE)
"""

import json

import pytest

from cstepper import run_source
from cstepper.config import InterpreterConfig
from cstepper.engine import Interpreter, RunState
from cstepper.tape import Marker, TapeItem


class Checkpoint(Marker):
    """Marker type with no handler in the engine."""


FACTORIAL = """
int factorial(int n) {
    if (n == 0) {
        return 1;
    }
    return n * factorial(n - 1);
}

int main() {
    int result = factorial(5);
    printf("%d\\n", result);
    return 0;
}
"""

FIB = """
int fib(int n) {
    if (n < 2) {
        return n;
    }
    return fib(n - 1) + fib(n - 2);
}

int main() {
    int r = fib(6);
    printf("%d\\n", r);
    return 0;
}
"""

TWICE = """
int twice(int n) { return n * 2; }

int main() {
    int r = 0;
    twice(21);
    r = twice(0);
    return 0;
}
"""


def _main(body: str) -> str:
    return "int main() {\n" + body + "\nreturn 0;\n}"


def _value(interp, name, scope="main"):
    """Last value recorded for `name` in the memory snapshot (frames may be gone)."""
    values = [e["value"] for e in interp.memory.memory_snapshot()
              if e["name"] == name and e["scope"] == scope]
    assert values, f"{scope}::{name} not in memory"
    return values[-1]


def _array(interp, name, scope="main"):
    return [e["value"] for e in interp.memory.memory_snapshot()
            if e["array_name"] == name and e["scope"] == scope]


# ─── Declarations ─────────────────────

class TestDeclarations:
    def test_value_visible_after_step(self):
        interp = Interpreter()
        assert interp.initialize(_main("int x = 42;\nchar c = 'A';\ndouble d = 2.5;"))
        result = interp.step()
        assert not result.done
        assert result.statement == "int x = 42"
        assert result.line == 2
        assert interp.memory.get_variable("x", "main") == 42
        interp.step()
        assert interp.memory.get_variable("c", "main") == 65
        interp.step()
        assert interp.memory.get_variable("d", "main") == 2.5

    def test_expression_initializer(self):
        interp = run_source(_main("int a = 6;\nint b = a * 7;"))
        assert _value(interp, "b") == 42

    def test_arrays(self):
        interp = run_source(_main('int a[3] = {1, 2, 3};\nchar s[] = "hi";'))
        assert _array(interp, "a") == [1, 2, 3]
        assert _array(interp, "s") == [104, 105, 0]

    def test_array_initializer_expressions(self):
        interp = run_source(_main("int x = 4;\nint a[2] = {x, x * 2};"))
        assert _array(interp, "a") == [4, 8]

    def test_symbolic_array_size(self):
        interp = run_source(_main("int n = 4;\nint a[n];"))
        assert _array(interp, "a") == [0, 0, 0, 0]

    def test_unresolved_array_size_warns(self):
        interp = run_source(_main("int a[m];"))
        assert interp.output[0].startswith("Warning: array 'a' not declared")
        assert interp.error is None

    def test_globals(self):
        interp = run_source("int g = 2 * 3;\nint main() { g = g + 1; return 0; }")
        assert interp.memory.get_variable("g") == 7

    def test_char_pointer_to_literal(self):
        interp = run_source(_main('char *s = "hey";\nprintf("%s\\n", s);'))
        assert interp.output == ["hey"]

    def test_element_assignment(self):
        interp = run_source(_main("int a[3];\nint i = 1;\na[i + 1] = 9;\na[0] += 5;"))
        assert _array(interp, "a") == [5, 0, 9]

    def test_integers_wrap_to_type_width(self):
        interp = run_source(_main("char c = 300;\nchar m = 200;\nunsigned char u = -1;\n"
                                  "short s = 70000;\nint big = 2147483648;"))
        assert _value(interp, "c") == 44
        assert _value(interp, "m") == -56
        assert _value(interp, "u") == 255
        assert _value(interp, "s") == 4464
        assert _value(interp, "big") == -2147483648

    def test_negative_char_in_string(self):
        interp = run_source(_main('char s[3] = "ab";\ns[0] = -5;\nprintf("%s\\n", s);'))
        assert _array(interp, "s") == [-5, 98, 0]
        assert interp.output == ["\xfbb"]
        assert interp.error is None


# ─── Arithmetic and errors ─────────────────────

class TestErrors:
    def test_integer_division(self):
        assert _value(run_source(_main("int q = 7 / 2;")), "q") == 3

    def test_modulo_by_zero_is_fatal(self):
        interp = run_source(_main('int r = 7 % 0;\nprintf("unreached\\n");'))
        assert interp.is_done
        assert interp.output[-1] == "Error: Modulo by zero"
        assert "unreached" not in interp.output

    def test_out_of_bounds_stops_run(self):
        interp = run_source(_main('int a[3] = {1, 2, 3};\nint x = a[5];\nprintf("unreached\\n");'))
        assert interp.state == RunState.DONE
        assert "out of bounds" in interp.output[-1]
        assert interp.error == "Index out of bounds: a[5] (size 3)"

    def test_out_of_bounds_write(self):
        interp = run_source(_main("int a[3];\na[3] = 1;"))
        assert "out of bounds" in interp.output[-1]

    def test_undeclared_assignment_is_fatal(self):
        interp = run_source(_main("ghost = 1;"))
        assert interp.error == "Assignment to undeclared variable 'ghost'"

    def test_undefined_function_is_not_fatal(self):
        interp = run_source(_main('foo(1);\nprintf("after\\n");'))
        assert interp.output == ["Error: undefined function 'foo'", "after"]
        assert interp.error is None
        assert interp.is_done

    def test_unknown_statement_warns(self):
        interp = run_source(_main("int x = 1;\nx ? 1 : 2;\nx = 5;"))
        assert "Warning: Unknown statement: x ? 1 : 2" in interp.output
        assert _value(interp, "x") == 5
        assert interp.error is None

    def test_missing_entry_function(self):
        interp = Interpreter()
        assert interp.initialize("int foo() { return 1; }") is False
        assert interp.output == ["Error: Entry function 'main' not found"]
        assert interp.is_done

    def test_max_call_depth(self):
        src = "int f(int n) { return f(n + 1); }\nint main() { f(0); return 0; }"
        interp = run_source(src, max_call_depth=10)
        assert interp.is_done
        assert "Maximum call depth (10)" in interp.error

    def test_step_limit_pauses(self):
        interp = run_source(_main("while (1) { }"), max_steps=50)
        assert interp.state == RunState.PAUSED
        assert interp.output[-1] == "Warning: step limit (50) reached; run paused"

    def test_stray_break_warns(self):
        interp = run_source(_main("break;"))
        assert interp.output == ["Warning: 'break' outside of a loop ignored"]

    def test_infinite_double_into_int_is_fatal(self):
        interp = run_source(_main('double e = 1e308 * 10;\nint x = e;\nprintf("unreached\\n");'))
        assert interp.is_done
        assert interp.error == "Cannot store inf in 'int'"
        assert interp.output[-1] == "Error: Cannot store inf in 'int'"

    def test_bad_argument_leaves_no_frame(self):
        src = "int f(int n) { return n; }\n" + _main('int r = f("hi");')
        interp = run_source(src)
        assert interp.error.startswith("Cannot store string")
        state = interp.get_execution_state()
        assert [f["function"] for f in state.stack_snapshot] == ["main"]
        assert not [e for e in state.memory_snapshot if e["scope"] == "f"]

    def test_unsupported_tape_item_warns(self):
        interp = Interpreter()
        interp.initialize(_main("int a = 1;\nint b = 2;"))
        interp.step()
        act = interp.activations[-1]
        act.segment.insert(act.pc, TapeItem("main", Checkpoint(line=2)))
        interp.step()
        assert interp.output[-1].startswith("Warning: Unsupported tape item")
        assert interp.output[-1] == "Warning: Unsupported tape item 'Checkpoint'"
        assert interp.is_running
        result = interp.step()
        assert result.statement == "int b = 2"
        assert interp.memory.get_variable("b", "main") == 2


# ─── Control flow ─────────────────────

class TestControlFlow:
    @pytest.mark.parametrize("x,expected", [(5, 1), (-5, 2)])
    def test_if_else_exclusive(self, x, expected):
        interp = run_source(_main(f"int a = 0;\nint x = {x};\n"
                                  "if (x > 0) { a = a + 1; } else { a = a + 2; }"))
        assert _value(interp, "a") == expected

    @pytest.mark.parametrize("x,expected", [(4, 1), (-4, 2), (0, 3)])
    def test_else_if_chain(self, x, expected):
        interp = run_source(_main(f"int a = 0;\nint x = {x};\n"
                                  "if (x > 0) { a = 1; } else if (x < 0) { a = 2; } else { a = 3; }"))
        assert _value(interp, "a") == expected

    def test_while(self):
        interp = run_source(_main("int i = 0;\nint s = 0;\nwhile (i < 5) { s += i; i++; }"))
        assert (_value(interp, "i"), _value(interp, "s")) == (5, 10)

    def test_while_false_skips_body(self):
        interp = run_source(_main("int x = 0;\nwhile (0) { x = 1; }\nx = x + 2;"))
        assert _value(interp, "x") == 2

    def test_for(self):
        interp = run_source(_main("int s = 0;\nint i;\nfor (i = 0; i < 4; i++) { s += i; }"))
        assert (_value(interp, "i"), _value(interp, "s")) == (4, 6)

    def test_for_with_declaration(self):
        interp = run_source(_main("int s = 0;\nfor (int k = 0; k < 3; k++) { s += 2; }"))
        assert _value(interp, "s") == 6

    def test_break(self):
        interp = run_source(_main("int i = 0;\nwhile (i < 10) { i++; if (i == 3) { break; } }"))
        assert _value(interp, "i") == 3

    def test_break_leaves_innermost_loop(self):
        interp = run_source(_main(
            "int outer;\nint j;\nint total = 0;\n"
            "for (outer = 0; outer < 3; outer++) {\n"
            "  for (j = 0; j < 10; j++) {\n"
            "    if (j == 2) { break; }\n"
            "    total++;\n"
            "  }\n"
            "}"))
        assert (_value(interp, "outer"), _value(interp, "total")) == (3, 6)

    def test_continue_runs_increment(self):
        interp = run_source(_main(
            "int s = 0;\nint i;\n"
            "for (i = 0; i < 6; i++) { if (i % 2) { continue; } s += i; }"))
        assert _value(interp, "s") == 6

    def test_visited_and_pc(self):
        interp = Interpreter()
        interp.initialize(_main("int x = 1;\nif (x) { x = 2; } else { x = 3; }"))
        for _ in range(4):
            interp.step()
        # decl, IfCond, x = 2, IfEnd, ElseStart, x = 3, ElseEnd, return, FunctionEnd
        assert [item.visited for item in interp.tape[:6]] == [True] * 4 + [False] * 2
        assert interp.pc == 6
        assert interp.memory.get_variable("x", "main") == 2


# ─── Calls ─────────────────────

class TestCalls:
    def test_factorial(self):
        interp = run_source(FACTORIAL)
        assert interp.output == ["120"]
        frames = [f for f in interp.completed_frames if f["function"] == "factorial"]
        assert len(frames) == 6
        assert [f["return_value"] for f in frames] == [1, 1, 2, 6, 24, 120]
        assert [f["variables"]["n"]["value"] for f in frames] == [0, 1, 2, 3, 4, 5]
        assert interp.completed_frames[-1]["function"] == "main"
        assert interp.error is None

    def test_fibonacci(self):
        assert run_source(FIB).output == ["8"]

    def test_stack_during_recursion(self):
        interp = Interpreter()
        interp.initialize(FACTORIAL)
        interp.step()
        stack = interp.get_execution_state().stack_snapshot
        assert [f["function"] for f in stack] == ["main", "factorial"]
        assert stack[1]["caller"] == "main"
        assert stack[1]["variables"]["n"]["value"] == 5

    def test_bare_calls_mutate_globals(self):
        src = ("int counter = 0;\n"
               "void bump() { counter = counter + 1; }\n"
               "int main() { bump(); bump(); return 0; }")
        interp = run_source(src)
        assert interp.memory.get_variable("counter") == 2

    def test_pointer_parameters(self):
        src = ("void swap(int *a, int *b) { int t = *a; *a = *b; *b = t; }\n"
               "int main() { int x = 3; int y = 7; swap(&x, &y);\n"
               'printf("%d %d\\n", x, y); return 0; }')
        assert run_source(src).output == ["7 3"]

    def test_return_coerced_to_declared_type(self):
        src = "int half() { return 7 / 2.0; }\n" + _main("int r = half();")
        assert _value(run_source(src), "r") == 3

    def test_float_return(self):
        src = "double avg(int a, int b) { return (a + b) / 2.0; }\n" + _main("double m = avg(2, 3);")
        assert _value(run_source(src), "m") == 2.5

    def test_argument_count_warning(self):
        src = "int f(int a, int b) { return a; }\n" + _main("int r = f(1);")
        interp = run_source(src)
        assert "Warning: 'f' expects 2 argument(s), got 1" in interp.output
        assert _value(interp, "r") == 1

    def test_frame_resolution(self):
        assert _value(run_source(TWICE), "r") == 0

    def test_legacy_cache_resolution(self):
        interp = run_source(TWICE, profile="legacy")
        assert _value(interp, "r") == 42

    def test_legacy_recursive_return(self):
        src = FACTORIAL.split("int main")[0] + _main("factorial(3);")
        interp = run_source(src, profile="legacy")
        frames = [f for f in interp.completed_frames if f["function"] == "factorial"]
        assert [f["return_value"] for f in frames] == [3]

    def test_void_entry_without_return(self):
        interp = run_source("void main() { int x = 1; }")
        assert interp.is_done
        assert interp.completed_frames[-1]["return_value"] is None

    def test_custom_entry(self):
        interp = Interpreter(InterpreterConfig(entry_function="start"))
        interp.initialize('int start() { puts("go"); return 0; }')
        interp.run()
        assert interp.output == ["go"]


    def test_step_reports_function_of_executed_item(self):
        interp = Interpreter()
        interp.initialize("int f() { return 3; }\n" + _main("int a = f();"))
        first = interp.step()
        assert (first.function, first.statement) == ("main", "int a = f()")
        second = interp.step()
        assert (second.function, second.statement) == ("f", "return 3")
        interp.run()
        assert _value(interp, "a") == 3

# ─── Built-ins ─────────────────────

class TestPrintf:
    def _out(self, call: str) -> list:
        return run_source(_main(call)).output

    def test_conversions(self):
        out = self._out('printf("%5.2f|%x|%c|%s|%%|%d\\n", 3.14159, 255, 65, "ok");')
        assert out == [" 3.14|ff|A|ok|%|%d"]

    def test_flags_and_star_width(self):
        assert self._out('printf("%-4d|%*d|%03d", 7, 5, 42, 9);') == ["7   |   42|009"]

    def test_negative_hex(self):
        assert self._out('printf("%x", -1);') == ["ffffffff"]

    def test_char_conversion_masks_to_byte(self):
        assert self._out('printf("%c|%c", -1, 321);') == ["\xffA"]

    def test_infinite_value_with_integer_conversion(self):
        interp = run_source(_main('printf("%d", 1e308 * 10);'))
        assert interp.error == "Cannot format inf with %d"

    def test_char_array_as_string(self):
        assert self._out('char name[] = "cstep";\nprintf("name=%s\\n", name);') == ["name=cstep"]

    def test_puts(self):
        assert self._out('puts("hello");') == ["hello"]


# ─── Run states ─────────────────────

class TestRunStates:
    def test_fresh_interpreter_ready(self):
        interp = Interpreter()
        assert interp.state == RunState.READY
        assert interp.tape == []
        assert interp.step().done

    def test_reset_is_idempotent(self):
        interp = run_source(FACTORIAL)
        interp.reset()
        first = interp.get_execution_state().as_dict()
        interp.reset()
        assert interp.get_execution_state().as_dict() == first
        assert first["state"] == "READY"
        assert first["memory_snapshot"] == []
        assert first["output_lines"] == []
        assert first["stack_snapshot"] == []
        assert interp.tape == []

    def test_step_after_done_changes_nothing(self):
        interp = run_source(FACTORIAL)
        before = interp.get_execution_state().as_dict()
        result = interp.step()
        assert result.done
        assert interp.get_execution_state().as_dict() == before

    def test_pause_and_resume(self):
        interp = Interpreter()
        interp.initialize(_main("int x = 1;\nx = 2;"))
        interp.step()
        interp.pause()
        assert interp.step().done
        assert interp.is_paused
        assert interp.memory.get_variable("x", "main") == 1
        assert interp.run() == RunState.PAUSED
        interp.resume()
        assert interp.run() == RunState.DONE
        assert _value(interp, "x") == 2

    def test_reinitialize_starts_clean(self):
        interp = run_source(FACTORIAL)
        interp.initialize(FIB)
        interp.run()
        assert interp.output == ["8"]
        assert all(f["function"] != "factorial" for f in interp.completed_frames)

    def test_instances_independent(self):
        a = run_source(FACTORIAL)
        b = Interpreter()
        assert b.output == []
        assert b.memory.memory_snapshot() == []
        assert a.output == ["120"]

    def test_state_is_json_serialisable(self):
        interp = run_source(FACTORIAL)
        data = json.loads(json.dumps(interp.get_execution_state().as_dict()))
        assert data["state"] == "DONE"
        assert data["error"] is None
