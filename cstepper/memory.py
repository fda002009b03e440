"""
Simulated memory for the cstepper interpreter.

Flat, byte-addressed space starting at a fixed base (0x1000 by default),
filled by bump allocation: every declaration gets a fresh contiguous range
and addresses are never reused within one run.

  cells      address -> Int | Float | Address   (one cell per element)
  symbols    base address -> Symbol metadata (every symbol ever declared)
  globals    name -> address                     (scope "global")
  frames     call stack; each frame binds its own parameters and locals

Name lookup from a scope walks: the current frame for that scope, then the
global table, then the caller frames down the stack. Each recursive
activation owns its bindings, so (scope, name) maps to one address per
binding table.

Snapshots are plain dicts/lists for the display layer and never alias
internal state.
"""

from __future__ import annotations
import bisect
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .lexer import unquote
from .values import (
    Address, Cell, ExecutionError, Int, Value,
    coerce, default_cell, format_address, from_cell,
    is_pointer_type, type_size,
)

log = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"
DEFAULT_BASE_ADDRESS = 0x1000
PARAMETER_SLOT = 4


@dataclass
class Symbol:
    """Metadata for one declared name."""
    name: str
    scope: str
    type: str               # element type for arrays
    address: int
    size: int               # bytes for the whole symbol
    is_array: bool = False
    length: int = 1         # element count
    element_size: int = 4
    frame_id: Optional[int] = None

    @property
    def is_pointer(self) -> bool:
        return not self.is_array and is_pointer_type(self.type)

    def element_address(self, index: int) -> int:
        return self.address + index * self.element_size

    def contains(self, address: int) -> bool:
        return self.address <= address < self.address + self.size


@dataclass
class Frame:
    """A call activation record."""
    id: int
    function: str
    caller: Optional[str]
    parameters: Dict[str, int] = field(default_factory=dict)    # name -> address
    locals: Dict[str, int] = field(default_factory=dict)
    return_value: Optional[Value] = None
    returned: bool = False

    def lookup(self, name: str) -> Optional[int]:
        if name in self.parameters:
            return self.parameters[name]
        return self.locals.get(name)


class MemoryModel:
    """Address space, symbol tables and call-frame stack."""

    def __init__(self, base_address: int = DEFAULT_BASE_ADDRESS):
        self.base_address = base_address
        self.reset()

    def reset(self):
        """Clear every map, the frame stack and the return cache; rewind allocation."""
        self.next_address = self.base_address
        self.cells: Dict[int, Cell] = {}
        self.symbols: Dict[int, Symbol] = {}
        self._symbol_bases: List[int] = []          # sorted; bump allocation appends
        self.globals: Dict[str, int] = {}
        self.pointer_targets: Dict[int, int] = {}   # pointer cell -> target address
        self.frames: List[Frame] = []
        self.last_return_values: Dict[str, Value] = {}
        self._detached: Dict[str, Dict[str, int]] = {}
        self._next_frame_id = 1

    # --- Allocation ---

    def allocate(self, size: int) -> int:
        """Bump-allocate `size` bytes and return the base address."""
        address = self.next_address
        self.next_address += max(size, 0)
        return address

    def _register(self, symbol: Symbol, table: Dict[str, int]):
        table[symbol.name] = symbol.address
        self.symbols[symbol.address] = symbol
        bisect.insort(self._symbol_bases, symbol.address)

    # --- Scope resolution ---

    def _frame_index(self, scope: str) -> Optional[int]:
        """Index of the topmost frame running `scope`, if any."""
        for i in range(len(self.frames) - 1, -1, -1):
            if self.frames[i].function == scope:
                return i
        return None

    def _table_for(self, scope: str) -> Tuple[Dict[str, int], Optional[Frame]]:
        """Binding table that receives new declarations in `scope`."""
        if scope == GLOBAL_SCOPE:
            return self.globals, None
        idx = self._frame_index(scope)
        if idx is None:
            # Declarations in a scope with no live frame still need a home
            return self._detached.setdefault(scope, {}), None
        frame = self.frames[idx]
        return frame.locals, frame

    def resolve(self, name: str, scope: str = GLOBAL_SCOPE) -> Optional[Symbol]:
        """Symbol visible as `name` from `scope`: frame -> global -> callers."""
        idx = self._frame_index(scope) if scope != GLOBAL_SCOPE else None
        if idx is not None:
            address = self.frames[idx].lookup(name)
            if address is not None:
                return self.symbols[address]
        elif scope in self._detached and name in self._detached[scope]:
            return self.symbols[self._detached[scope][name]]

        if name in self.globals:
            return self.symbols[self.globals[name]]

        if idx is not None:
            for frame in reversed(self.frames[:idx]):
                address = frame.lookup(name)
                if address is not None:
                    return self.symbols[address]
        return None

    def symbol_at(self, address: int) -> Optional[Tuple[Symbol, int]]:
        """Symbol whose storage covers `address`, with the element index."""
        i = bisect.bisect_right(self._symbol_bases, address) - 1
        if i < 0:
            return None
        symbol = self.symbols[self._symbol_bases[i]]
        if not symbol.contains(address):
            return None
        return symbol, (address - symbol.address) // symbol.element_size

    # --- Declarations ---

    def declare_scalar(self, name: str, type_name: str, init: Optional[Value] = None,
                       scope: str = GLOBAL_SCOPE) -> int:
        """Allocate and register a scalar; store `init` or the type's default."""
        table, frame = self._table_for(scope)
        existing = self.symbols.get(table[name]) if name in table else None

        if existing is not None and not existing.is_array and existing.type == type_name:
            symbol = existing
        else:
            size = type_size(type_name)
            symbol = Symbol(name=name, scope=scope, type=type_name,
                            address=self.allocate(size), size=size, element_size=size,
                            frame_id=frame.id if frame else None)
            self._register(symbol, table)

        self.cells[symbol.address] = default_cell(type_name)
        self.pointer_targets.pop(symbol.address, None)
        if init is not None:
            self._store(symbol, symbol.address, init, scope)
        log.debug("declare %s %s::%s @ %s = %r", type_name, scope, name,
                  format_address(symbol.address), self.cells[symbol.address])
        return symbol.address

    def declare_array(self, name: str, element_type: str, count: Any,
                      initializer: Union[List[Value], str, None] = None,
                      scope: str = GLOBAL_SCOPE) -> Optional[int]:
        """Allocate `count` contiguous elements; None when count is unresolved.

        `initializer` is a list of element values (default-filled when short)
        or, for char arrays, a string literal written byte by byte with a
        terminator at the first unfilled slot.
        """
        if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
            log.warning("Array %s::%s not declared: size %r is not a positive integer",
                        scope, name, count)
            return None

        table, frame = self._table_for(scope)
        element_size = type_size(element_type)
        existing = self.symbols.get(table[name]) if name in table else None

        if (existing is not None and existing.is_array and existing.type == element_type
                and existing.length == count):
            symbol = existing
        else:
            symbol = Symbol(name=name, scope=scope, type=element_type,
                            address=self.allocate(count * element_size),
                            size=count * element_size, is_array=True, length=count,
                            element_size=element_size, frame_id=frame.id if frame else None)
            self._register(symbol, table)

        for i in range(count):
            self.cells[symbol.element_address(i)] = default_cell(element_type)

        if isinstance(initializer, str):
            text = unquote(initializer)
            if len(text) > count:
                log.warning("String initializer for %s truncated to %d bytes", name, count)
            for i, ch in enumerate(text[:count]):
                self.cells[symbol.element_address(i)] = Int(ord(ch))
            if len(text) < count:
                self.cells[symbol.element_address(len(text))] = Int(0)
        elif initializer is not None:
            if len(initializer) > count:
                log.warning("Initializer list for %s truncated to %d elements", name, count)
            for i, value in enumerate(initializer[:count]):
                self._store(symbol, symbol.element_address(i), value, scope)

        log.debug("declare %s %s::%s[%d] @ %s", element_type, scope, name, count,
                  format_address(symbol.address))
        return symbol.address

    # --- Variable access ---

    def _store(self, symbol: Symbol, address: int, value: Value, scope: str):
        """Coerce and write one element of `symbol`, tracking pointer targets."""
        if isinstance(value, str) and value.startswith("&"):
            target = self.resolve(value[1:].strip(), scope)
            if target is None:
                raise ExecutionError(f"Cannot take address of undeclared '{value[1:].strip()}'")
            value = Address(target.address, target.element_size)

        if symbol.is_pointer and isinstance(value, str):
            value = self.store_string(value)

        cell = coerce(symbol.type, value)
        self.cells[address] = cell
        if isinstance(cell, Address) and cell.value:
            self.pointer_targets[address] = cell.value
        else:
            self.pointer_targets.pop(address, None)

    def set_variable(self, name: str, value: Value, scope: str = GLOBAL_SCOPE) -> bool:
        """Write `value` to `name`; False when the name is not visible from `scope`."""
        symbol = self.resolve(name, scope)
        if symbol is None:
            return False
        if symbol.is_array:
            log.warning("Cannot assign to array %s as a whole", name)
            return False
        self._store(symbol, symbol.address, value, scope)
        return True

    def get_variable(self, name: str, scope: str = GLOBAL_SCOPE) -> Optional[Value]:
        """Current value of `name`, or None when undefined. Arrays decay to an Address."""
        symbol = self.resolve(name, scope)
        if symbol is None:
            return None
        if symbol.is_array:
            return Address(symbol.address, symbol.element_size)
        return from_cell(self.cells[symbol.address])

    # --- Address-level access ---

    def read_address(self, address: int) -> Value:
        """Value of the cell at `address`; raises on an unmapped address."""
        if address not in self.cells:
            raise ExecutionError(f"Invalid memory access at {format_address(address)}")
        return from_cell(self.cells[address])

    def write_address(self, address: int, value: Value):
        """Store through a pointer, using the type of whatever lives there."""
        if address not in self.cells:
            raise ExecutionError(f"Invalid memory access at {format_address(address)}")
        found = self.symbol_at(address)
        if found is not None:
            symbol, _ = found
            self._store(symbol, address, value, symbol.scope)
            return
        # Anonymous storage (string literals) holds chars
        self.cells[address] = coerce("char", value)

    def store_string(self, text: str) -> Address:
        """Place a string literal in anonymous storage and return its address."""
        address = self.allocate(len(text) + 1)
        for i, ch in enumerate(text):
            self.cells[address + i] = Int(ord(ch))
        self.cells[address + len(text)] = Int(0)
        return Address(address, 1)

    def read_string(self, address: int, limit: int = 4096) -> str:
        """Read a NUL-terminated char sequence starting at `address`."""
        chars: List[str] = []
        for _ in range(limit):
            value = self.read_address(address)
            if isinstance(value, Address):
                raise ExecutionError(f"Expected char data at {format_address(address)}")
            if (int(value) & 0xFF) == 0:
                break
            chars.append(chr(int(value) & 0xFF))
            stride = 1
            found = self.symbol_at(address)
            if found is not None:
                stride = found[0].element_size
            address += stride
        return "".join(chars)

    # --- Frames ---

    def push_frame(self, function: str, params: Dict[str, Value],
                   caller: Optional[str] = None,
                   param_types: Optional[Dict[str, str]] = None) -> int:
        """Push a frame for `function`, binding each parameter in a 4-byte slot."""
        frame = Frame(id=self._next_frame_id, function=function, caller=caller)
        self._next_frame_id += 1
        self.frames.append(frame)

        param_types = param_types or {}
        try:
            for name, value in params.items():
                ptype = param_types.get(name, "int")
                symbol = Symbol(name=name, scope=function, type=ptype,
                                address=self.allocate(PARAMETER_SLOT), size=PARAMETER_SLOT,
                                element_size=PARAMETER_SLOT, frame_id=frame.id)
                self._register(symbol, frame.parameters)
                self.cells[symbol.address] = default_cell(ptype)
                self._store(symbol, symbol.address, value, function)
        except ExecutionError:
            self._discard_frame(frame)
            raise

        log.debug("push frame #%d %s(%s) caller=%s", frame.id, function,
                  ", ".join(f"{k}={v!r}" for k, v in params.items()), caller)
        return frame.id

    def _discard_frame(self, frame: Frame):
        """Undo a half-built frame: drop it and unregister its parameters."""
        self.frames.remove(frame)
        for address in frame.parameters.values():
            del self.symbols[address]
            self._symbol_bases.remove(address)
            self.cells.pop(address, None)
            self.pointer_targets.pop(address, None)

    def pop_frame(self) -> Optional[Frame]:
        """Pop the top frame and record its return value in the last-return cache."""
        if not self.frames:
            return None
        frame = self.frames.pop()
        if frame.return_value is not None:
            self.last_return_values[frame.function] = frame.return_value
        log.debug("pop frame #%d %s -> %r", frame.id, frame.function, frame.return_value)
        return frame

    @property
    def current_frame(self) -> Optional[Frame]:
        return self.frames[-1] if self.frames else None

    # --- Snapshots ---

    def _display(self, address: int) -> Any:
        cell = self.cells.get(address)
        return cell.value if cell is not None else None

    def memory_snapshot(self) -> List[Dict[str, Any]]:
        """One entry per scalar and per array element, sorted by scope then address."""
        live = {frame.id for frame in self.frames}
        entries: List[Dict[str, Any]] = []

        for base in self._symbol_bases:
            symbol = self.symbols[base]
            active = symbol.frame_id is None or symbol.frame_id in live
            for i in range(symbol.length if symbol.is_array else 1):
                address = symbol.element_address(i)
                target = self.pointer_targets.get(address)
                entries.append({
                    "address": format_address(address),
                    "name": f"{symbol.name}[{i}]" if symbol.is_array else symbol.name,
                    "scope": symbol.scope,
                    "type": symbol.type,
                    "value": self._display(address),
                    "is_pointer": symbol.is_pointer,
                    "pointer_target": format_address(target) if target is not None else None,
                    "is_array_element": symbol.is_array,
                    "array_name": symbol.name if symbol.is_array else None,
                    "element_index": i if symbol.is_array else None,
                    "frame_id": symbol.frame_id,
                    "active": active,
                    "_sort": (symbol.scope != GLOBAL_SCOPE, symbol.scope, address),
                })

        entries.sort(key=lambda e: e["_sort"])
        for entry in entries:
            del entry["_sort"]
        return entries

    def _variables(self, bindings: Dict[str, int]) -> Dict[str, Dict[str, Any]]:
        out = {}
        for name, address in bindings.items():
            symbol = self.symbols[address]
            if symbol.is_array:
                value = [self._display(symbol.element_address(i))
                         for i in range(symbol.length)]
            else:
                value = self._display(address)
            out[name] = {"address": format_address(address), "value": value}
        return out

    def frame_snapshot(self, frame: Frame) -> Dict[str, Any]:
        variables = self._variables(frame.parameters)
        variables.update(self._variables(frame.locals))
        ret = frame.return_value
        return {
            "function": frame.function,
            "frame_id": frame.id,
            "caller": frame.caller,
            "variables": variables,
            "return_value": ret.value if isinstance(ret, Address) else ret,
        }

    def stack_snapshot(self) -> List[Dict[str, Any]]:
        """Frames bottom to top with parameter/local values."""
        return [self.frame_snapshot(frame) for frame in self.frames]
