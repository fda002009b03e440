#!/usr/bin/env python3
"""
cstep: single-stepping C subset interpreter CLI

Usage:
    python cstep.py <input.c> [--profile default|legacy|deep] [--entry main]
                              [--max-steps N] [--trace] [--json] [--verbose]

Examples:
    python cstep.py factorial.c                 # run, print output + memory
    python cstep.py fib.c --trace               # one line per executed step
    python cstep.py fib.c --profile legacy      # last-return cache semantics
    python cstep.py prog.c --json > state.json  # final execution state
    python cstep.py prog.c --tokens             # dump token stream and exit
"""

import argparse
import json
import logging
import sys
from dataclasses import fields, is_dataclass
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from cstepper import __version__
from cstepper.config import InterpreterConfig, PROFILES
from cstepper.engine import Interpreter
from cstepper.lexer import Lexer
from cstepper.log_setup import setup_logging
from cstepper.parser import Parser

console = Console()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="cstep",
        description="Single-stepping interpreter for a C subset",
        epilog="Profiles: " + ", ".join(PROFILES.keys()),
    )
    parser.add_argument("input", help="Input C source file")
    parser.add_argument("--profile", default="default", choices=list(PROFILES.keys()),
                        help="Interpreter profile (default: default)")
    parser.add_argument("--entry", default=None,
                        help="Entry function (default: main)")
    parser.add_argument("--max-steps", type=int, default=None,
                        help="Stop after this many steps")
    parser.add_argument("--trace", action="store_true",
                        help="Print every executed step")
    parser.add_argument("--tokens", action="store_true",
                        help="Dump token stream and exit (debug)")
    parser.add_argument("--ast", action="store_true",
                        help="Dump statement tree and exit (debug)")
    parser.add_argument("--json", action="store_true",
                        help="Print the final execution state as JSON")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging on stderr")
    parser.add_argument("--log-dir", default=None,
                        help="Also write a DEBUG log file into this directory")
    parser.add_argument("--version", action="version", version=f"cstep {__version__}")

    args = parser.parse_args(argv)
    setup_logging(console_level=logging.DEBUG if args.verbose else logging.WARNING,
                  log_dir=args.log_dir)

    try:
        with open(args.input, "r", encoding="utf-8") as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.input}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error reading {args.input}: {e}", file=sys.stderr)
        return 1

    # --tokens / --ast stop before execution
    if args.tokens:
        for tok in Lexer(source).tokenize():
            print(tok)
        return 0

    if args.ast:
        lexer = Lexer(source)
        console.print(_ast_tree(Parser(lexer.tokenize(), lexer.source).parse()))
        return 0

    config = InterpreterConfig.from_profile(args.profile, entry_function=args.entry,
                                            max_steps=args.max_steps)
    interp = Interpreter(config)
    if interp.initialize(source):
        if args.trace:
            _trace(interp, config.max_steps)
        else:
            interp.run()

    state = interp.get_execution_state()
    if args.json:
        print(json.dumps(state.as_dict(), indent=2))
    else:
        for line in state.output_lines:
            console.print(line, markup=False, highlight=False)
        console.print(_memory_table(state.memory_snapshot))
        if state.completed_frames:
            console.print(_frames_table(state.completed_frames))

    return 1 if state.error else 0


def _trace(interp: Interpreter, limit: int):
    count = 0
    while interp.is_running and count < limit:
        printed = len(interp.output)
        result = interp.step()
        count += 1
        console.print(f"[dim]{count:5d}[/dim] [cyan]{result.function}[/cyan] "
                      f"L{result.line}: {escape(result.statement or '')}", highlight=False)
        for line in result.output[printed:]:
            console.print(f"      > {line}", markup=False, highlight=False)
    if interp.is_running:
        interp.pause()


def _memory_table(entries) -> Table:
    table = Table(title="Memory")
    for col in ("Address", "Scope", "Name", "Value", "Points to"):
        table.add_column(col)
    for e in entries:
        style = None if e["active"] else "dim"
        table.add_row(e["address"], e["scope"], e["name"], str(e["value"]),
                      e["pointer_target"] or "", style=style)
    return table


def _frames_table(frames) -> Table:
    table = Table(title="Completed frames")
    for col in ("#", "Function", "Caller", "Variables", "Returned"):
        table.add_column(col)
    for f in frames:
        variables = ", ".join(f"{k}={v['value']}" for k, v in f["variables"].items())
        table.add_row(str(f["frame_id"]), f["function"], f["caller"] or "",
                      variables, "" if f["return_value"] is None else str(f["return_value"]))
    return table


def _ast_tree(node, parent: Optional[Tree] = None) -> Tree:
    """Statement tree as a rich Tree; line/col are left out."""
    label = f"[bold]{type(node).__name__}:[/bold]"
    branch = Tree(label) if parent is None else parent.add(label)
    for f in fields(node):
        if f.name in ("line", "col"):
            continue
        val = getattr(node, f.name)
        if is_dataclass(val):
            _ast_tree(val, branch.add(f"{f.name}:"))
        elif isinstance(val, list) and val and is_dataclass(val[0]):
            group = branch.add(f"{f.name}:")
            for item in val:
                _ast_tree(item, group)
        elif val is not None:
            branch.add(f"{f.name}: {escape(repr(val) if isinstance(val, str) else str(val))}")
    return branch


if __name__ == "__main__":
    sys.exit(main())
