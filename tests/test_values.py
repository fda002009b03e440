"""
Cell value and type helper tests.
"""

import pytest

from cstepper.values import (
    Address, ExecutionError, Float, Int, base_type, coerce, format_address,
    is_float_type, truthy, type_size,
)


class TestTypes:
    @pytest.mark.parametrize("type_name,size", [
        ("char", 1), ("short", 2), ("int", 4), ("float", 4), ("double", 8),
        ("long", 8), ("unsigned long", 8), ("char*", 4), ("double*", 4), ("mystery", 4),
    ])
    def test_sizes(self, type_name, size):
        assert type_size(type_name) == size

    def test_base_type(self):
        assert base_type("const unsigned char") == "char"
        assert base_type("unsigned") == "int"

    def test_float_types(self):
        assert is_float_type("double")
        assert not is_float_type("double*")
        assert not is_float_type("int")


class TestCoerce:
    def test_int_truncates(self):
        assert coerce("int", 2.99) == Int(2)
        assert coerce("short", -2.99) == Int(-2)

    def test_float(self):
        assert coerce("float", 3) == Float(3.0)

    def test_pointer_stride_from_pointee(self):
        assert coerce("char*", Address(0x1000, 4)) == Address(0x1000, 1)
        assert coerce("double*", 0) == Address(0, 8)

    def test_pointer_rejects_float(self):
        with pytest.raises(ExecutionError):
            coerce("int*", 1.5)

    def test_address_into_int(self):
        assert coerce("int", Address(0x1004)) == Int(0x1004)

    @pytest.mark.parametrize("type_name,value,expected", [
        ("char", 300, 44), ("char", 200, -56), ("unsigned char", 300, 44),
        ("short", 40000, -25536), ("int", 2 ** 31, -(2 ** 31)),
        ("unsigned int", -1, 0xFFFFFFFF), ("long", 2 ** 63, -(2 ** 63)),
    ])
    def test_integers_wrap(self, type_name, value, expected):
        assert coerce(type_name, value) == Int(expected)

    @pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
    def test_non_finite_into_int(self, value):
        with pytest.raises(ExecutionError):
            coerce("int", value)
        assert coerce("double", value).value != 0


class TestAddress:
    def test_offset_and_truth(self):
        p = Address(0x1000, 4)
        assert p.offset(3) == Address(0x100C, 4)
        assert p
        assert not Address(0)

    def test_str(self):
        assert str(Address(0x1A2B)) == "0x1A2B"
        assert format_address(255) == "0xFF"

    def test_truthy(self):
        assert truthy("text")
        assert not truthy(0.0)
        assert truthy(Address(4))
