"""
Statement tree definitions for the cstepper interpreter.

Defines the tree produced by the parser and consumed by the tape
flattener. Expressions are kept as raw source text: the evaluator
tokenizes them on demand, so the display layer can show exactly what
the learner wrote.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Union


# ──────────────────────────────────────────────
# Base node
# ──────────────────────────────────────────────

@dataclass
class ASTNode:
    """Base class for all statement tree nodes."""
    line: int = 0
    col: int = 0

    @property
    def kind(self) -> str:
        """Tag name used for dispatch and display (e.g. 'VariableDecl')."""
        return type(self).__name__


# ──────────────────────────────────────────────
# Top-level: Program and functions
# ──────────────────────────────────────────────

@dataclass
class Parameter(ASTNode):
    """Function parameter; `type` already carries a trailing '*' for pointers."""
    type: str = "int"
    name: str = ""
    is_pointer: bool = False

@dataclass
class Function(ASTNode):
    """Function definition: return_type name(parameters) { body }"""
    return_type: str = "void"
    name: str = ""
    parameters: List[Parameter] = field(default_factory=list)
    body: List[ASTNode] = field(default_factory=list)

@dataclass
class Program(ASTNode):
    """Root node: includes, function definitions and global declarations."""
    includes: List[str] = field(default_factory=list)
    functions: List[Function] = field(default_factory=list)
    globals: List[ASTNode] = field(default_factory=list)

    def find_function(self, name: str) -> Optional[Function]:
        for func in self.functions:
            if func.name == name:
                return func
        return None


# ──────────────────────────────────────────────
# Declarations
# ──────────────────────────────────────────────

ArraySize = Union[int, str, None]   # literal, symbolic name, or inferred

@dataclass
class VariableDecl(ASTNode):
    """TYPE (*)? name (= init_expr)?"""
    var_type: str = "int"
    name: str = ""
    init_expr: Optional[str] = None

    @property
    def is_pointer(self) -> bool:
        return self.var_type.endswith("*")

@dataclass
class ArrayDecl(ASTNode):
    """TYPE name[size] (= {list} | "string")?"""
    element_type: str = "int"
    name: str = ""
    size: ArraySize = None
    init_list: Optional[List[Union[int, float, str]]] = None
    init_string: Optional[str] = None     # quoted, as written


# ──────────────────────────────────────────────
# Statements
# ──────────────────────────────────────────────

@dataclass
class Assignment(ASTNode):
    """target = value_expr, target[index_expr] = value_expr or *target = value_expr."""
    target: str = ""
    value_expr: str = ""
    index_expr: Optional[str] = None
    deref: bool = False

    @property
    def target_text(self) -> str:
        if self.deref:
            return f"*{self.target}"
        if self.index_expr is not None:
            return f"{self.target}[{self.index_expr}]"
        return self.target

@dataclass
class FunctionCall(ASTNode):
    """name(args...) used as a statement."""
    name: str = ""
    args: List[str] = field(default_factory=list)

@dataclass
class RecursiveHint:
    """The `VAR * FUNC(ARGS)` shape found in a return statement."""
    variable: str
    callee: str
    args: List[str] = field(default_factory=list)

@dataclass
class Return(ASTNode):
    """return [value_expr];"""
    value_expr: Optional[str] = None
    recursive: Optional[RecursiveHint] = None

@dataclass
class If(ASTNode):
    """if (cond) then_block [else else_block]"""
    cond: str = ""
    then_block: List[ASTNode] = field(default_factory=list)
    else_block: Optional[List[ASTNode]] = None

@dataclass
class While(ASTNode):
    """while (cond) body"""
    cond: str = ""
    body: List[ASTNode] = field(default_factory=list)

@dataclass
class For(ASTNode):
    """for (init; cond; incr) body"""
    init: List[ASTNode] = field(default_factory=list)
    cond: str = ""
    incr: str = ""
    body: List[ASTNode] = field(default_factory=list)

@dataclass
class Break(ASTNode):
    """break;"""
    pass

@dataclass
class Continue(ASTNode):
    """continue;"""
    pass

@dataclass
class Unknown(ASTNode):
    """Anything the parser could not recognise; reported when executed."""
    raw_text: str = ""


Statement = Union[
    VariableDecl, ArrayDecl, Assignment, FunctionCall, Return,
    If, While, For, Break, Continue, Unknown,
]
