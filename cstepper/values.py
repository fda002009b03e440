"""
Memory cell values for the cstepper interpreter.

A cell holds exactly one of three variants:

  Int      integral scalars (char, short, int, long, unsigned ...)
  Float    float / double
  Address  pointer values; `stride` is the size of the pointed-to element

At runtime expressions produce plain Python ints, floats and strings, plus
Address for `&x`, array-name decay and pointer reads. coerce() is the single
gate between runtime values and cells.
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Union


class ExecutionError(Exception):
    """Fatal runtime condition: the run stops and the message is reported."""


@dataclass(frozen=True)
class Int:
    value: int


@dataclass(frozen=True)
class Float:
    value: float


@dataclass(frozen=True)
class Address:
    value: int
    stride: int = 4

    def offset(self, count: int) -> "Address":
        return Address(self.value + count * self.stride, self.stride)

    def __bool__(self):
        return self.value != 0

    def __str__(self):
        return format_address(self.value)


Cell = Union[Int, Float, Address]
Value = Union[int, float, str, Address]


# ──────────────────────────────────────────────
# Types
# ──────────────────────────────────────────────

TYPE_SIZES = {
    "char": 1,
    "short": 2,
    "int": 4,
    "float": 4,
    "double": 8,
    "long": 8,
}

POINTER_SIZE = 4
FLOAT_TYPES = ("float", "double")


def base_type(type_name: str) -> str:
    """'unsigned long' -> 'long', 'const char' -> 'char', 'unsigned' -> 'int'."""
    words = [w for w in type_name.split() if w not in ("const", "unsigned", "signed")]
    return " ".join(words) or "int"


def is_pointer_type(type_name: str) -> bool:
    return type_name.rstrip().endswith("*")


def pointee_type(type_name: str) -> str:
    return type_name.rstrip()[:-1].rstrip()


def type_size(type_name: str) -> int:
    """Storage size in bytes. Unknown types take 4 bytes."""
    if is_pointer_type(type_name):
        return POINTER_SIZE
    words = base_type(type_name).split()
    if "long" in words:
        return TYPE_SIZES["long"]
    return TYPE_SIZES.get(words[-1] if words else "int", 4)


def is_float_type(type_name: str) -> bool:
    return not is_pointer_type(type_name) and base_type(type_name).split()[-1] in FLOAT_TYPES


def default_cell(type_name: str) -> Cell:
    if is_pointer_type(type_name):
        return Address(0, type_size(pointee_type(type_name)))
    if is_float_type(type_name):
        return Float(0.0)
    return Int(0)


# ──────────────────────────────────────────────
# Conversions
# ──────────────────────────────────────────────

def coerce(type_name: str, value: Value) -> Cell:
    """Convert a runtime value into a cell of the given declared type.

    Floats stored in integral types are truncated toward zero, and integers
    wrap to the width of the type (char 8 bits, short 16, int 32, long 64).
    One-character strings become their character code. Raises ExecutionError
    when the value cannot live in that type, including NaN or infinity
    stored in an integral type.
    """
    if isinstance(value, (Int, Float)):
        value = value.value

    if is_pointer_type(type_name):
        stride = type_size(pointee_type(type_name))
        if isinstance(value, Address):
            return Address(value.value, stride)
        if isinstance(value, int) and not isinstance(value, bool):
            return Address(value, stride)
        raise ExecutionError(f"Cannot store {value!r} in a '{type_name}' pointer")

    if isinstance(value, Address):
        value = value.value
    elif isinstance(value, str):
        if len(value) != 1:
            raise ExecutionError(f"Cannot store string {value!r} in '{type_name}'")
        value = ord(value)

    if is_float_type(type_name):
        return Float(float(value))
    if isinstance(value, float) and not math.isfinite(value):
        raise ExecutionError(f"Cannot store {value!r} in '{type_name}'")
    return Int(wrap_integer(type_name, int(value)))


def wrap_integer(type_name: str, value: int) -> int:
    """Narrow `value` to the width of an integral type, two's complement."""
    bits = type_size(type_name) * 8
    value &= (1 << bits) - 1
    if "unsigned" not in type_name.split() and value >> (bits - 1):
        value -= 1 << bits
    return value


def from_cell(cell: Cell) -> Value:
    """Runtime value of a cell: Address stays an Address, scalars unwrap."""
    if isinstance(cell, Address):
        return cell
    return cell.value


def as_number(value: Value) -> Union[int, float]:
    """Numeric view of a value; addresses compare and print as their integer."""
    if isinstance(value, Address):
        return value.value
    if isinstance(value, str):
        if len(value) == 1:
            return ord(value)
        raise ExecutionError(f"String {value!r} used as a number")
    return value


def truthy(value: Value) -> bool:
    if isinstance(value, str):
        return True
    return as_number(value) != 0


def format_address(address: int) -> str:
    return f"0x{address:X}"
