"""
Execution tape: the flat, steppable form of a function body.

flatten() desugars nested control flow into marker items so the engine can
move a program counter over a plain list:

  if (c) { T } else { E }     IfCond  T...  IfEnd  ElseStart  E...  ElseEnd
  while (c) { B }             WhileCondCheck  B...  WhileEnd
  for (I; c; n) { B }         I...  ForCondCheck  B...  ForIncrement  ForEnd
  break / continue            LoopJump (target resolved at flatten time)

Loop markers carry resolved tape indices, so a jump never needs to search.
If/else branches are found with the balanced-depth scan in find_matching().
Each function call gets its own segment, closed by a FunctionEnd marker.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Type, Union

from .ast_nodes import *


# ──────────────────────────────────────────────
# Markers
# ──────────────────────────────────────────────

@dataclass
class Marker:
    """Synthetic tape item encoding a control-flow boundary."""
    line: int = 0

    @property
    def kind(self) -> str:
        return type(self).__name__

@dataclass
class IfCond(Marker):
    cond: str = ""

@dataclass
class IfEnd(Marker):
    pass

@dataclass
class ElseStart(Marker):
    pass

@dataclass
class ElseEnd(Marker):
    pass

@dataclass
class WhileCondCheck(Marker):
    cond: str = ""
    end: int = -1           # index of the matching WhileEnd

@dataclass
class WhileEnd(Marker):
    check: int = -1         # index of the WhileCondCheck

@dataclass
class ForCondCheck(Marker):
    cond: str = ""
    incr: str = ""
    end: int = -1           # index of the matching ForEnd

@dataclass
class ForIncrement(Marker):
    incr: str = ""
    check: int = -1

@dataclass
class ForEnd(Marker):
    pass

@dataclass
class LoopJump(Marker):
    kind_name: str = "break"    # "break" | "continue"
    target: int = -1

@dataclass
class FunctionEnd(Marker):
    function: str = ""
    return_to: Optional[str] = None


@dataclass
class TapeItem:
    function: str
    node: Union[ASTNode, Marker]
    visited: bool = False

    @property
    def kind(self) -> str:
        return self.node.kind

    @property
    def line(self) -> int:
        return self.node.line

    def describe(self) -> str:
        return describe(self.node)


# ──────────────────────────────────────────────
# Flattening
# ──────────────────────────────────────────────

@dataclass
class _LoopContext:
    jumps: List[LoopJump] = field(default_factory=list)


def flatten(function: str, statements: Sequence[ASTNode],
            tape: Optional[List[TapeItem]] = None,
            loops: Optional[List[_LoopContext]] = None) -> List[TapeItem]:
    """Append the flattened form of `statements` to `tape` and return it."""
    if tape is None:
        tape = []
    if loops is None:
        loops = []

    for stmt in statements:
        if isinstance(stmt, If):
            tape.append(TapeItem(function, IfCond(cond=stmt.cond, line=stmt.line)))
            flatten(function, stmt.then_block, tape, loops)
            tape.append(TapeItem(function, IfEnd(line=stmt.line)))
            if stmt.else_block is not None:
                tape.append(TapeItem(function, ElseStart(line=stmt.line)))
                flatten(function, stmt.else_block, tape, loops)
                tape.append(TapeItem(function, ElseEnd(line=stmt.line)))

        elif isinstance(stmt, While):
            check = WhileCondCheck(cond=stmt.cond, line=stmt.line)
            check_index = len(tape)
            tape.append(TapeItem(function, check))
            ctx = _LoopContext()
            loops.append(ctx)
            flatten(function, stmt.body, tape, loops)
            loops.pop()
            check.end = len(tape)
            tape.append(TapeItem(function, WhileEnd(check=check_index, line=stmt.line)))
            _patch(ctx, brk=check.end + 1, cont=check_index)

        elif isinstance(stmt, For):
            flatten(function, stmt.init, tape, loops)
            check = ForCondCheck(cond=stmt.cond, incr=stmt.incr, line=stmt.line)
            check_index = len(tape)
            tape.append(TapeItem(function, check))
            ctx = _LoopContext()
            loops.append(ctx)
            flatten(function, stmt.body, tape, loops)
            loops.pop()
            incr_index = len(tape)
            tape.append(TapeItem(function, ForIncrement(incr=stmt.incr, check=check_index,
                                                        line=stmt.line)))
            check.end = len(tape)
            tape.append(TapeItem(function, ForEnd(line=stmt.line)))
            _patch(ctx, brk=check.end, cont=incr_index)

        elif isinstance(stmt, (Break, Continue)) and loops:
            jump = LoopJump(kind_name="break" if isinstance(stmt, Break) else "continue",
                            line=stmt.line)
            loops[-1].jumps.append(jump)
            tape.append(TapeItem(function, jump))

        else:
            tape.append(TapeItem(function, stmt))

    return tape


def _patch(ctx: _LoopContext, brk: int, cont: int):
    for jump in ctx.jumps:
        jump.target = brk if jump.kind_name == "break" else cont


def flatten_function(func: Function, return_to: Optional[str] = None) -> List[TapeItem]:
    """Fresh tape segment for one activation of `func`."""
    tape = flatten(func.name, func.body)
    tape.append(TapeItem(func.name, FunctionEnd(function=func.name, return_to=return_to,
                                                line=func.line)))
    return tape


# ──────────────────────────────────────────────
# Jump resolution
# ──────────────────────────────────────────────

BRANCH_OPENERS: Tuple[Type[Marker], ...] = (IfCond, ElseStart)
BRANCH_CLOSERS: Tuple[Type[Marker], ...] = (IfEnd, ElseEnd)


def find_matching(tape: Sequence[TapeItem], start: int,
                  targets: Union[Type, Tuple[Type, ...]],
                  openers: Tuple[Type, ...] = BRANCH_OPENERS,
                  closers: Tuple[Type, ...] = BRANCH_CLOSERS) -> int:
    """Index of the first `targets` item after `start` at the same nesting depth.

    Returns -1 when no such item exists.
    """
    depth = 0
    for i in range(start + 1, len(tape)):
        node = tape[i].node
        if depth == 0 and isinstance(node, targets):
            return i
        if isinstance(node, openers):
            depth += 1
        elif isinstance(node, closers):
            depth -= 1
            if depth < 0:
                return -1
    return -1


# ──────────────────────────────────────────────
# Display text
# ──────────────────────────────────────────────

def describe(node: Union[ASTNode, Marker]) -> str:
    """Short source-like text for a tape item."""
    if isinstance(node, VariableDecl):
        init = f" = {node.init_expr}" if node.init_expr is not None else ""
        return f"{node.var_type} {node.name}{init}"
    if isinstance(node, ArrayDecl):
        size = "" if node.size is None else node.size
        if node.init_string is not None:
            init = f" = {node.init_string}"
        elif node.init_list is not None:
            init = " = {" + ", ".join(str(v) for v in node.init_list) + "}"
        else:
            init = ""
        return f"{node.element_type} {node.name}[{size}]{init}"
    if isinstance(node, Assignment):
        return f"{node.target_text} = {node.value_expr}"
    if isinstance(node, FunctionCall):
        return f"{node.name}({', '.join(node.args)})"
    if isinstance(node, Return):
        return f"return {node.value_expr}" if node.value_expr else "return"
    if isinstance(node, Unknown):
        return node.raw_text
    if isinstance(node, IfCond):
        return f"if ({node.cond})"
    if isinstance(node, WhileCondCheck):
        return f"while ({node.cond})"
    if isinstance(node, ForCondCheck):
        return f"for (...; {node.cond}; {node.incr})"
    if isinstance(node, ForIncrement):
        return node.incr
    if isinstance(node, LoopJump):
        return node.kind_name
    if isinstance(node, FunctionEnd):
        return f"end of {node.function}"
    if isinstance(node, Break):
        return "break"
    if isinstance(node, Continue):
        return "continue"
    return node.kind
