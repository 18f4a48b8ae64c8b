"""Tests for op classification."""

from gemm_fusion.op_classify import (
    OpCategory,
    classify_op,
    elementwise_supports_dtype,
    is_elementwise,
    is_parameter_like,
    is_scalar_constant,
    register_op_category,
    reshape_is_bitcast,
)
from tests.conftest import make_graph, make_op, param


class TestClassification:
    def test_known_categories(self):
        assert classify_op("add") == OpCategory.ELEMENTWISE
        assert classify_op("select") == OpCategory.ELEMENTWISE
        assert classify_op("convert") == OpCategory.CONVERT
        assert classify_op("bitcast") == OpCategory.BITCAST
        assert classify_op("transpose") == OpCategory.TRANSPOSE
        assert classify_op("concatenate") == OpCategory.CONCATENATE
        assert classify_op("dot") == OpCategory.DOT

    def test_unknown_is_unsupported(self):
        assert classify_op("custom-call") == OpCategory.UNSUPPORTED
        assert classify_op("shift-right-logical") == OpCategory.UNSUPPORTED

    def test_register_custom_opcode(self):
        register_op_category("erf", OpCategory.ELEMENTWISE)
        assert classify_op("erf") == OpCategory.ELEMENTWISE

    def test_convert_is_elementwise(self):
        graph = make_graph([
            param("p", "s8", [4], 0),
            make_op("c", "convert", "f16", [4], ["p"]),
        ])
        assert is_elementwise(graph.root)
        assert not is_elementwise(graph.get_op_by_name("p"))


class TestLeaves:
    def test_parameter_like(self):
        graph = make_graph([
            param("p", "f32", [4], 0),
            make_op("c", "constant", "f32", []),
            make_op("v", "constant", "f32", [4]),
        ])
        assert is_parameter_like(graph.get_op_by_name("p"))
        assert not is_parameter_like(graph.get_op_by_name("c"))
        assert is_parameter_like(graph.get_op_by_name("v"))

    def test_scalar_constant(self):
        graph = make_graph([
            param("s", "f32", [], 0),
            make_op("c", "constant", "f32", []),
            make_op("v", "constant", "f32", [4]),
        ])
        assert is_scalar_constant(graph.get_op_by_name("c"))
        assert not is_scalar_constant(graph.get_op_by_name("v"))
        assert not is_scalar_constant(graph.get_op_by_name("s"))


class TestDtypeSupport:
    def test_float_only_math(self):
        graph = make_graph([
            param("p", "s32", [4], 0),
            make_op("e", "exponential", "s32", [4], ["p"]),
        ])
        assert not elementwise_supports_dtype(graph.root, "s32")
        assert elementwise_supports_dtype(graph.root, "bf16")

    def test_bitwise_only(self):
        graph = make_graph([
            param("p", "pred", [4], 0),
            param("q", "pred", [4], 1),
            make_op("a", "and", "pred", [4], ["p", "q"]),
        ])
        assert elementwise_supports_dtype(graph.root, "pred")
        assert not elementwise_supports_dtype(graph.root, "f32")


class TestReshapeIsBitcast:
    def test_row_major_reshape(self):
        graph = make_graph([
            param("p", "f16", [3, 200], 0),
            make_op("r", "reshape", "f16", [600], ["p"]),
        ])
        assert reshape_is_bitcast(graph, graph.root)

    def test_unit_dims_are_ignored(self):
        graph = make_graph([
            param("p", "f32", [1, 8], 0, layout=[0, 1]),
            make_op("r", "reshape", "f32", [8], ["p"]),
        ])
        assert reshape_is_bitcast(graph, graph.root)

    def test_column_major_operand(self):
        graph = make_graph([
            param("p", "f32", [4, 8], 0, layout=[0, 1]),
            make_op("r", "reshape", "f32", [32], ["p"]),
        ])
        assert not reshape_is_bitcast(graph, graph.root)
