"""
cstepper: single-stepping C subset interpreter
===============================================
Runs a restricted subset of C one statement at a time, exposing a simulated
memory image, call stack and output log after every step, for teaching and
visualization front ends.

Architecture (for contributors / porters to other languages):
    ┌──────────┐    ┌──────────┐    ┌──────────┐    ┌───────────┐    ┌───────────┐
    │ C Source │───>│  Lexer   │───>│  Parser  │───>│   Tape    │───>│  Engine   │
    │ (.c)     │    │ (tokens) │    │  (tree)  │    │ (markers) │    │  (steps)  │
    └──────────┘    └──────────┘    └──────────┘    └───────────┘    └─────┬─────┘
                                                                           │
                                        ┌───────────┐    ┌──────────┐      │
                                        │  Memory   │<───│Evaluator │<─────┘
                                        │  (cells)  │    │ (exprs)  │
                                        └───────────┘    └──────────┘

    - lexer.py:     Preprocessor + tokenizer
    - parser.py:    Recursive descent over statements; expression tokenizer
    - ast_nodes.py: Dataclass statement tree
    - tape.py:      Flattens bodies into marker-delimited tape segments
    - evaluator.py: Flat `left op right` expressions, call continuations
    - memory.py:    Bump-allocated address space, symbols, frames, snapshots
    - engine.py:    Interpreter state machine (READY/RUNNING/PAUSED/DONE)
    - config.py:    InterpreterConfig + named PROFILES
"""

__version__ = "0.3.0"

from .lexer import Lexer, Token, TokenType
from .ast_nodes import *
from .parser import Parser, ParseError, parse
from .values import Address, ExecutionError
from .memory import MemoryModel
from .config import InterpreterConfig, PROFILES
from .engine import ExecutionState, Interpreter, RunState, StepResult


def run_source(source: str, *, profile: str = "default", **overrides) -> Interpreter:
    """Initialize and run a program to completion (or its step limit).

    Args:
        source: C source text.
        profile: Name of a configuration profile ('default', 'legacy', 'deep').
        **overrides: InterpreterConfig fields overriding the profile.

    Returns:
        The Interpreter, for inspecting output, memory and completed frames.
    """
    interp = Interpreter(InterpreterConfig.from_profile(profile, **overrides))
    if interp.initialize(source):
        interp.run()
    return interp
