"""
cstepper execution engine.

Single-steps a parsed program over flattened tape segments.

Execution model:
  1. initialize(source): parse, declare globals, push the entry frame and
     flatten its body into the first activation's segment
  2. step(): execute exactly one tape item of the top activation
       - statements act on the MemoryModel
       - markers move the program counter (loops, if/else, break/continue)
       - a call pushes a frame plus a new activation with its own segment
  3. Return / FunctionEnd pop the frame and hand the value back to the
     caller's continuation, which re-executes the waiting statement

Run states:
  READY    nothing loaded (after construction or reset)
  RUNNING  step() executes tape items
  PAUSED   step() is a no-op until resume()
  DONE     program finished or a fatal error was reported

Fatal runtime conditions raise ExecutionError inside a handler; step()
catches it, appends an "Error: ..." line to the output log and moves to
DONE. Nothing escapes step().

Usage:
    interp = Interpreter()
    interp.initialize(source)
    while interp.is_running:
        result = interp.step()
    print("\\n".join(interp.output))
"""

from __future__ import annotations
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .ast_nodes import *
from .config import InterpreterConfig
from .evaluator import PENDING, Continuation, Evaluator, parse_literal
from .memory import GLOBAL_SCOPE, MemoryModel
from .parser import parse, parse_statement_text
from .tape import (
    ElseEnd, ElseStart, ForCondCheck, ForEnd, ForIncrement, FunctionEnd,
    IfCond, IfEnd, LoopJump, TapeItem, WhileCondCheck, WhileEnd,
    find_matching, flatten_function,
)
from .values import (
    Address, ExecutionError, Value, as_number, coerce, is_pointer_type, truthy,
)

log = logging.getLogger(__name__)


class RunState(Enum):
    READY = 'READY'
    RUNNING = 'RUNNING'
    PAUSED = 'PAUSED'
    DONE = 'DONE'


_SUSPEND = object()     # handler result: stay on this item until the callee returns


@dataclass
class Activation:
    """One running function: its tape segment and program counter."""
    function: str
    segment: List[TapeItem]
    frame_id: Optional[int] = None
    pc: int = 0
    continuation: Continuation = field(default_factory=Continuation)

    @property
    def current(self) -> Optional[TapeItem]:
        if 0 <= self.pc < len(self.segment):
            return self.segment[self.pc]
        return None


@dataclass
class StepResult:
    done: bool
    function: Optional[str]
    statement: Optional[str]
    line: int
    memory: List[Dict[str, Any]]
    stack: List[Dict[str, Any]]
    output: List[str]
    completed_frames: List[Dict[str, Any]]

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionState:
    state: str
    is_running: bool
    is_paused: bool
    current_function: Optional[str]
    current_statement: Optional[str]
    current_line: int
    steps: int
    error: Optional[str]
    memory_snapshot: List[Dict[str, Any]]
    stack_snapshot: List[Dict[str, Any]]
    output_lines: List[str]
    completed_frames: List[Dict[str, Any]]

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ──────────────────────────────────────────────
# printf
# ──────────────────────────────────────────────

_PRINTF_RE = re.compile(
    r"%%|%([-+ #0]*)(\d+|\*)?(?:\.(\d+))?(?:hh|h|ll|l|L|z|j|t)?([diouxXfFeEgGaAcs])")


class Interpreter:
    """Step-driven interpreter for the supported C subset.

    One instance owns its parser output, memory, activation stack and
    output log; independent instances never share state.
    """

    def __init__(self, config: Optional[InterpreterConfig] = None):
        self.config = config or InterpreterConfig()
        self.memory = MemoryModel(self.config.base_address)
        self.builtins: Dict[str, Callable[[Activation, List[Value]], None]] = {
            "printf": self._builtin_printf,
            "puts": self._builtin_puts,
        }
        self.evaluator = Evaluator(self.memory, self._is_user_function,
                                   self._report, builtins=self.builtins)
        self._dispatch = self._build_dispatch()
        self.reset()

    # ══════════════════════════════════════════════
    # Control surface
    # ══════════════════════════════════════════════

    def reset(self):
        """Back to READY with empty memory, tape and output. Always safe."""
        self.state = RunState.READY
        self.program: Optional[Program] = None
        self.activations: List[Activation] = []
        self.output: List[str] = []
        self.completed_frames: List[Dict[str, Any]] = []
        self.current_function: Optional[str] = None
        self.current_item: Optional[TapeItem] = None
        self.error: Optional[str] = None
        self.steps = 0
        self.memory.reset()

    def initialize(self, source: str) -> bool:
        """Parse `source`, declare globals and enter the entry function."""
        self.reset()
        self.program = parse(source)
        self.state = RunState.RUNNING

        scope = Activation(GLOBAL_SCOPE, [])
        try:
            for decl in self.program.globals:
                if isinstance(decl, (VariableDecl, ArrayDecl)):
                    self._dispatch[type(decl)](scope, decl)
            entry = self.program.find_function(self.config.entry_function)
            if entry is None:
                raise ExecutionError(f"Entry function '{self.config.entry_function}' not found")
            self._enter(entry, [0] * len(entry.parameters), caller=None)
        except ExecutionError as e:
            self._fail(str(e))
            return False

        log.info("Initialized: %d function(s), entry=%s, profile=%s",
                 len(self.program.functions), self.config.entry_function, self.config.profile)
        return True

    def pause(self):
        if self.state == RunState.RUNNING:
            self.state = RunState.PAUSED

    def resume(self):
        if self.state == RunState.PAUSED:
            self.state = RunState.RUNNING

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING

    @property
    def is_paused(self) -> bool:
        return self.state == RunState.PAUSED

    @property
    def is_done(self) -> bool:
        return self.state == RunState.DONE

    @property
    def tape(self) -> List[TapeItem]:
        """Segment of the innermost activation (empty when nothing runs)."""
        return self.activations[-1].segment if self.activations else []

    @property
    def pc(self) -> int:
        return self.activations[-1].pc if self.activations else 0

    # ══════════════════════════════════════════════
    # Execution
    # ══════════════════════════════════════════════

    def step(self) -> StepResult:
        """Execute one tape item and return a snapshot of the new state."""
        self._execute_next()
        return self._result()

    def _execute_next(self):
        if self.state != RunState.RUNNING:
            return
        if not self.activations:
            self.state = RunState.DONE
            return

        act = self.activations[-1]
        item = act.current
        if item is None:
            # Segment ran off its end without a FunctionEnd; treat as one
            item = TapeItem(act.function, FunctionEnd(function=act.function))

        item.visited = True
        self.current_function = item.function
        self.current_item = item
        self.steps += 1
        log.debug("step %d: %s[%d] %s", self.steps, act.function, act.pc, item.describe())

        cont = act.continuation
        cont.begin()
        try:
            handler = self._dispatch.get(type(item.node))
            if handler is None:
                self._report(f"Warning: Unsupported tape item '{item.kind}'")
                target = None
            else:
                target = handler(act, item.node)
        except ExecutionError as e:
            self._fail(str(e))
            return

        if target is _SUSPEND:
            return
        cont.clear()
        act.pc = act.pc + 1 if target is None else target

    def run(self, max_steps: Optional[int] = None) -> RunState:
        """Step until DONE or PAUSED, or pause after `max_steps` steps."""
        limit = max_steps if max_steps is not None else self.config.max_steps
        count = 0
        while self.state == RunState.RUNNING:
            if count >= limit:
                self._report(f"Warning: step limit ({limit}) reached; run paused")
                self.pause()
                break
            self._execute_next()
            count += 1
        return self.state

    def get_execution_state(self) -> ExecutionState:
        item = self.current_item
        return ExecutionState(
            state=self.state.value,
            is_running=self.is_running,
            is_paused=self.is_paused,
            current_function=self.current_function,
            current_statement=item.describe() if item else None,
            current_line=item.line if item else 0,
            steps=self.steps,
            error=self.error,
            memory_snapshot=self.memory.memory_snapshot(),
            stack_snapshot=self.memory.stack_snapshot(),
            output_lines=list(self.output),
            completed_frames=list(self.completed_frames),
        )

    def _result(self) -> StepResult:
        item = self.current_item
        return StepResult(
            done=self.state != RunState.RUNNING,
            function=self.current_function,
            statement=item.describe() if item else None,
            line=item.line if item else 0,
            memory=self.memory.memory_snapshot(),
            stack=self.memory.stack_snapshot(),
            output=list(self.output),
            completed_frames=list(self.completed_frames),
        )

    # ══════════════════════════════════════════════
    # Diagnostics
    # ══════════════════════════════════════════════

    def _report(self, line: str):
        self.output.append(line)
        if line.startswith(("Warning:", "Error:")):
            log.info("%s", line)

    def _fail(self, message: str):
        log.warning("Run stopped: %s", message)
        self.error = message
        self.output.append(f"Error: {message}")
        self.state = RunState.DONE

    # ══════════════════════════════════════════════
    # Calls
    # ══════════════════════════════════════════════

    def _is_user_function(self, name: str) -> bool:
        return self.program is not None and self.program.find_function(name) is not None

    def _evaluate(self, act: Activation, text: str):
        cont = act.continuation
        if not self.config.uses_continuations or act.function == GLOBAL_SCOPE:
            cont = None
        return self.evaluator.evaluate(text, act.function, cont)

    def _enter(self, func: Function, args: List[Value], caller: Optional[str]) -> Activation:
        """Push a frame and a fresh tape segment for `func`."""
        if len(self.memory.frames) >= self.config.max_call_depth:
            raise ExecutionError(
                f"Maximum call depth ({self.config.max_call_depth}) exceeded calling '{func.name}'")

        if len(args) != len(func.parameters):
            self._report(f"Warning: '{func.name}' expects {len(func.parameters)} "
                         f"argument(s), got {len(args)}")

        params: Dict[str, Value] = {}
        types: Dict[str, str] = {}
        for i, param in enumerate(func.parameters):
            if not param.name:
                continue
            params[param.name] = args[i] if i < len(args) else 0
            types[param.name] = param.type

        frame_id = self.memory.push_frame(func.name, params, caller, types)
        act = Activation(func.name, flatten_function(func, return_to=caller), frame_id)
        self.activations.append(act)
        return act

    def _suspend(self, act: Activation):
        """Run the callee the current statement is waiting on."""
        request = act.continuation.request
        func = self.program.find_function(request.function)
        callee = self._enter(func, request.args, caller=act.function)
        act.continuation.awaiting = callee.frame_id
        act.continuation.request = None
        return _SUSPEND

    def _complete_frame(self, act: Activation, value: Optional[Value]):
        """Pop the activation's frame, record it, and hand `value` to the caller."""
        frame = self.memory.current_frame
        if frame is None or frame.id != act.frame_id:
            return
        frame.return_value = value
        frame.returned = True
        self.completed_frames.append(self.memory.frame_snapshot(frame))
        self.memory.pop_frame()

        if len(self.activations) >= 2:
            caller = self.activations[-2]
            caller.continuation.deliver(frame.id, value if value is not None else 0)

    # ══════════════════════════════════════════════
    # Dispatch
    # ══════════════════════════════════════════════

    def _build_dispatch(self) -> dict:
        """Tape item type -> handler(act, node) -> next pc | None | _SUSPEND."""
        return {
            # ── Statements ──
            VariableDecl: self._exec_variable_decl,
            ArrayDecl: self._exec_array_decl,
            Assignment: self._exec_assignment,
            FunctionCall: self._exec_function_call,
            Return: self._exec_return,
            Unknown: self._exec_unknown,
            Break: self._exec_stray_jump,
            Continue: self._exec_stray_jump,

            # ── Markers ──
            IfCond: self._exec_if_cond,
            IfEnd: self._exec_if_end,
            ElseStart: self._exec_noop,
            ElseEnd: self._exec_noop,
            WhileCondCheck: self._exec_loop_check,
            WhileEnd: self._exec_while_end,
            ForCondCheck: self._exec_loop_check,
            ForIncrement: self._exec_for_increment,
            ForEnd: self._exec_noop,
            LoopJump: self._exec_loop_jump,
            FunctionEnd: self._exec_function_end,
        }

    def _exec_noop(self, act, node):
        return None

    def _exec_variable_decl(self, act: Activation, node: VariableDecl):
        scope = act.function
        literal = parse_literal(node.init_expr)
        if node.init_expr is None or literal is not None:
            self.memory.declare_scalar(node.name, node.var_type, literal, scope)
            return None

        self.memory.declare_scalar(node.name, node.var_type, None, scope)
        value = self._evaluate(act, node.init_expr)
        if value is PENDING:
            return self._suspend(act)
        self.memory.set_variable(node.name, value, scope)
        return None

    def _exec_array_decl(self, act: Activation, node: ArrayDecl):
        scope = act.function
        count = node.size
        if isinstance(count, str):
            resolved = self.memory.get_variable(count, scope)
            count = resolved if isinstance(resolved, int) else count

        initializer = None
        if node.init_string is not None:
            initializer = node.init_string
        elif node.init_list is not None:
            initializer = []
            for item in node.init_list:
                value = self._evaluate(act, item) if isinstance(item, str) else item
                if value is PENDING:
                    return self._suspend(act)
                initializer.append(value)

        address = self.memory.declare_array(node.name, node.element_type, count,
                                            initializer, scope)
        if address is None:
            self._report(f"Warning: array '{node.name}' not declared: "
                         f"size {node.size!r} is not a resolved positive integer")
        return None

    def _exec_assignment(self, act: Activation, node: Assignment):
        scope = act.function
        if not re.fullmatch(r"[A-Za-z_]\w*", node.target):
            raise ExecutionError(f"Malformed assignment target '{node.target_text}'")

        value = self._evaluate(act, node.value_expr)
        if value is PENDING:
            return self._suspend(act)

        if node.deref:
            pointer = self.memory.get_variable(node.target, scope)
            if pointer is None:
                raise ExecutionError(f"Assignment to undeclared variable '{node.target}'")
            if isinstance(pointer, str):
                raise ExecutionError(f"Malformed assignment target '{node.target_text}'")
            self.memory.write_address(as_number(pointer), value)
            return None

        if node.index_expr is not None:
            index = self._evaluate(act, node.index_expr)
            if index is PENDING:
                return self._suspend(act)
            address, _ = self.evaluator.element_address(node.target, index, scope)
            self.memory.write_address(address, value)
            return None

        if not self.memory.set_variable(node.target, value, scope):
            raise ExecutionError(f"Assignment to undeclared variable '{node.target}'")
        return None

    def _exec_function_call(self, act: Activation, node: FunctionCall):
        args: List[Value] = []
        for arg in node.args:
            value = self._evaluate(act, arg)
            if value is PENDING:
                return self._suspend(act)
            args.append(value)

        if node.name in self.builtins:
            self.builtins[node.name](act, args)
            return None

        func = self.program.find_function(node.name)
        if func is None:
            self._report(f"Error: undefined function '{node.name}'")
            return None

        # The caller moves on; a bare call's return value is discarded
        self._enter(func, args, caller=act.function)
        return None

    def _exec_return(self, act: Activation, node: Return):
        value: Optional[Value] = None
        hint = node.recursive
        if hint is not None and not self.config.uses_continuations:
            base = self.memory.get_variable(hint.variable, act.function)
            if base is None:
                raise ExecutionError(f"Undeclared identifier '{hint.variable}'")
            cached = self.memory.last_return_values.get(hint.callee)
            value = base if cached is None else as_number(base) * as_number(cached)
        elif node.value_expr:
            value = self._evaluate(act, node.value_expr)
            if value is PENDING:
                return self._suspend(act)

        func = self.program.find_function(act.function)
        if value is not None and func is not None and func.return_type != "void" \
                and not is_pointer_type(func.return_type) and not isinstance(value, str):
            value = coerce(func.return_type, value).value

        self._complete_frame(act, value)

        if act.function == self.config.entry_function and len(self.activations) == 1:
            self.activations.pop()
            self.state = RunState.DONE
            log.info("%s returned %r; run complete", act.function, value)
            return None

        end = find_matching(act.segment, act.pc, FunctionEnd, openers=(), closers=())
        return end if end != -1 else len(act.segment) - 1

    def _exec_function_end(self, act: Activation, node: FunctionEnd):
        self._complete_frame(act, None)
        if self.activations and self.activations[-1] is act:
            self.activations.pop()
        if not self.activations:
            self.state = RunState.DONE
        return None

    def _exec_unknown(self, act: Activation, node: Unknown):
        self._report(f"Warning: Unknown statement: {node.raw_text}")
        return None

    def _exec_stray_jump(self, act: Activation, node):
        self._report(f"Warning: '{node.kind.lower()}' outside of a loop ignored")
        return None

    def _exec_if_cond(self, act: Activation, node: IfCond):
        value = self._evaluate(act, node.cond)
        if value is PENDING:
            return self._suspend(act)
        if truthy(value):
            return None
        end = find_matching(act.segment, act.pc, IfEnd)
        if end == -1:
            raise ExecutionError("Unmatched if marker")
        nxt = act.segment[end + 1].node if end + 1 < len(act.segment) else None
        return end + 1 if isinstance(nxt, ElseStart) else end

    def _exec_if_end(self, act: Activation, node: IfEnd):
        nxt = act.pc + 1
        if nxt < len(act.segment) and isinstance(act.segment[nxt].node, ElseStart):
            else_end = find_matching(act.segment, nxt, ElseEnd)
            if else_end != -1:
                return else_end
        return None

    def _exec_loop_check(self, act: Activation, node):
        value = self._evaluate(act, node.cond)
        if value is PENDING:
            return self._suspend(act)
        if truthy(value):
            return None
        # While exits past its WhileEnd; for exits onto its ForEnd
        return node.end + 1 if isinstance(node, WhileCondCheck) else node.end

    def _exec_while_end(self, act: Activation, node: WhileEnd):
        return node.check

    def _exec_for_increment(self, act: Activation, node: ForIncrement):
        for stmt in parse_statement_text(node.incr) if node.incr else ():
            if not isinstance(stmt, (Assignment, FunctionCall, Unknown)):
                self._report(f"Warning: Unsupported loop increment '{node.incr}'")
                continue
            if self._dispatch[type(stmt)](act, stmt) is _SUSPEND:
                return _SUSPEND
        return node.check

    def _exec_loop_jump(self, act: Activation, node: LoopJump):
        return node.target

    # ══════════════════════════════════════════════
    # Built-ins
    # ══════════════════════════════════════════════

    def _text(self, value: Value) -> str:
        if isinstance(value, Address):
            return self.memory.read_string(value.value)
        return str(value)

    def _format_one(self, spec: str, conv: str, value: Value) -> str:
        if conv == "s":
            return ("%" + spec + "s") % self._text(value)
        if conv == "c" and isinstance(value, str):
            return ("%" + spec + "s") % value[:1]
        number = as_number(value)
        if conv in "cdiuoxX" and isinstance(number, float) and not math.isfinite(number):
            raise ExecutionError(f"Cannot format {number!r} with %{conv}")
        if conv == "c":
            return ("%" + spec + "c") % (int(number) & 0xFF)
        if conv in "diu":
            return ("%" + spec + "d") % int(number)
        if conv in "oxX":
            n = int(number)
            if n < 0:
                n &= 0xFFFFFFFF
            return ("%" + spec + conv) % n
        if conv in "aA":
            text = float(number).hex()
            return text.upper() if conv == "A" else text
        return ("%" + spec + conv) % float(number)

    def _builtin_printf(self, act: Activation, args: List[Value]):
        if not args:
            self._report("Warning: printf called without a format string")
            return
        fmt = self._text(args[0])
        rest = iter(args[1:])

        def substitute(m: re.Match) -> str:
            if m.group(0) == "%%":
                return "%"
            value = next(rest, None)
            if value is None:
                return m.group(0)
            flags, width, precision, conv = m.group(1), m.group(2), m.group(3), m.group(4)
            if width == "*":
                width = str(int(as_number(value)))
                value = next(rest, None)
                if value is None:
                    return m.group(0)
            spec = (flags or "") + (width or "") + (f".{precision}" if precision else "")
            return self._format_one(spec, conv, value)

        text = _PRINTF_RE.sub(substitute, fmt)
        self.output.append(text[:-1] if text.endswith("\n") else text)

    def _builtin_puts(self, act: Activation, args: List[Value]):
        self.output.append(self._text(args[0]) if args else "")
