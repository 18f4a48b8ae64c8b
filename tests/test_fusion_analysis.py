"""Tests for the iteration space analysis of fused computations."""

import pytest

from gemm_fusion.fusion_analysis import FusionAnalysis, FusionAnalysisError, Scope
from gemm_fusion.ir import TensorGraph
from tests.conftest import dot, frag, make_graph, make_op, param


def _frags(analysis, scope, op, dim):
    fragments = analysis.iter_spec(scope, op, dim)
    if fragments is None:
        return None
    return [frag(f) for f in fragments]


class TestDotOperands:
    def test_bitcast_merging_dimensions(self):
        graph = make_graph([
            param("p0", "s8", [1, 8, 6, 4], 0),
            make_op("b0", "bitcast", "s8", [48, 4], ["p0"]),
            param("p1", "s8", [4, 3], 1),
            dot("d", "f32", [48, 3], "b0", "p1"),
        ])
        analysis = FusionAnalysis.execute(graph)
        p0 = graph.get_op_by_name("p0")
        p1 = graph.get_op_by_name("p1")
        assert _frags(analysis, Scope.LHS, p0, 0) == [(4, 48, 0, 48, (6, 8))]
        assert _frags(analysis, Scope.LHS, p0, 1) == [(1, 4, 0, 4, (4,))]
        assert _frags(analysis, Scope.RHS, p1, 0) == [(3, 4, 0, 4, (4,))]
        assert _frags(analysis, Scope.RHS, p1, 1) == [(1, 3, 0, 3, (3,))]
        assert analysis.scope_parameters(Scope.LHS) == {p0.id}
        assert analysis.scope_parameters(Scope.RHS) == {p1.id}
        assert analysis.scope_parameters(Scope.OUTPUT) == frozenset()

    def test_transpose_then_merge(self):
        graph = make_graph([
            param("p0", "f32", [4, 6, 8], 0),
            make_op("t", "transpose", "f32", [6, 8, 4], ["p0"], attrs={"dimensions": [1, 2, 0]}),
            make_op("b", "bitcast", "f32", [48, 4], ["t"]),
            param("p1", "f32", [4, 3], 1),
            dot("d", "f32", [48, 3], "b", "p1"),
        ])
        analysis = FusionAnalysis.execute(graph)
        p0 = graph.get_op_by_name("p0")
        assert _frags(analysis, Scope.LHS, p0, 0) == [(1, 48, 0, 48, (8, 6))]
        assert _frags(analysis, Scope.LHS, p0, 1) == [(48, 4, 0, 4, (4,))]

    def test_ops_outside_a_scope_have_no_spec(self):
        graph = make_graph([
            param("p0", "f32", [8, 4], 0),
            param("p1", "f32", [4, 3], 1),
            dot("d", "f32", [8, 3], "p0", "p1"),
        ])
        analysis = FusionAnalysis.execute(graph)
        p0 = graph.get_op_by_name("p0")
        assert analysis.iter_spec(Scope.RHS, p0, 0) is None
        assert analysis.tensor_iteration_spec(Scope.RHS, p0) is None

    def test_size_one_batch_dimension(self):
        graph = make_graph([
            param("p0", "f32", [1, 8, 4], 0),
            param("p1", "f32", [1, 4, 3], 1),
            dot("d", "f32", [1, 8, 3], "p0", "p1", lhs_contracting=(2,), rhs_contracting=(1,),
                lhs_batch=(0,), rhs_batch=(0,)),
        ])
        analysis = FusionAnalysis.execute(graph)
        p0 = graph.get_op_by_name("p0")
        assert _frags(analysis, Scope.LHS, p0, 0) == [(32, 1, 0, 1, (1,))]
        assert _frags(analysis, Scope.LHS, p0, 1) == [(4, 8, 0, 8, (8,))]
        assert _frags(analysis, Scope.LHS, p0, 2) == [(1, 4, 0, 4, (4,))]
        assert _frags(analysis, Scope.OUTPUT, graph.root, 0) == [(24, 1, 0, 1, (1,))]

    def test_nested_slices(self):
        graph = make_graph([
            param("p0", "f32", [6, 24], 0),
            make_op("s1", "slice", "f32", [5, 20], ["p0"], attrs={"starts": [1, 3], "limits": [6, 23]}),
            make_op("s2", "slice", "f32", [3, 7], ["s1"], attrs={"starts": [1, 13], "limits": [4, 20]}),
            param("p1", "f32", [7, 5], 1),
            dot("d", "f32", [3, 5], "s2", "p1"),
        ])
        analysis = FusionAnalysis.execute(graph)
        p0 = graph.get_op_by_name("p0")
        assert _frags(analysis, Scope.LHS, p0, 0) == [(24, 6, 2, 5, (3,))]
        assert _frags(analysis, Scope.LHS, p0, 1) == [(1, 24, 16, 23, (7,))]

    def test_concatenation_offsets(self):
        graph = make_graph([
            param("p0", "f32", [16, 32], 0),
            param("p1", "f32", [32, 128], 1),
            param("p2", "f32", [32, 256], 2),
            make_op("cat", "concatenate", "f32", [32, 384], ["p1", "p2"], attrs={"dimension": 1}),
            dot("d", "f32", [16, 384], "p0", "cat"),
        ])
        analysis = FusionAnalysis.execute(graph)
        p1 = graph.get_op_by_name("p1")
        p2 = graph.get_op_by_name("p2")
        assert _frags(analysis, Scope.RHS, p1, 1) == [(1, 128, 0, 128, (128,))]
        assert _frags(analysis, Scope.RHS, p1, 0) == [(128, 32, 0, 32, (32,))]
        assert _frags(analysis, Scope.RHS, p2, 1) == [(1, 256, 0, 256, (256,))]
        assert analysis.concat_offset(Scope.RHS, p1) == 0
        assert analysis.concat_offset(Scope.RHS, p2) == 128
        assert analysis.concat_offset(Scope.RHS, graph.get_op_by_name("cat")) is None


class TestDotOutput:
    def test_bitcast_and_transpose_of_result(self):
        graph = make_graph([
            param("p0", "f32", [24, 8], 0),
            param("p1", "f32", [8, 3], 1),
            dot("d", "f32", [24, 3], "p0", "p1"),
            make_op("b", "bitcast", "f32", [2, 12, 3], ["d"]),
            make_op("t", "transpose", "f32", [3, 2, 12], ["b"], attrs={"dimensions": [2, 0, 1]}),
        ])
        analysis = FusionAnalysis.execute(graph)
        t = graph.root
        assert _frags(analysis, Scope.OUTPUT, t, 0) == [(1, 24, 0, 24, (12, 2))]
        assert _frags(analysis, Scope.OUTPUT, t, 1) == [(24, 3, 0, 3, (3,))]

    def test_output_parameter(self):
        graph = make_graph([
            param("p0", "f32", [3, 8], 0),
            param("p1", "f32", [8, 24], 1),
            dot("d", "f32", [3, 24], "p0", "p1"),
            param("p2", "f32", [3, 24], 2),
            make_op("a", "add", "f32", [3, 24], ["d", "p2"]),
        ])
        analysis = FusionAnalysis.execute(graph)
        p2 = graph.get_op_by_name("p2")
        assert analysis.scope_parameters(Scope.OUTPUT) == {p2.id}
        assert _frags(analysis, Scope.OUTPUT, p2, 0) == [(24, 3, 0, 3, (3,))]
        assert _frags(analysis, Scope.OUTPUT, p2, 1) == [(1, 24, 0, 24, (24,))]

    def test_broadcast_scalar_is_invariant(self):
        graph = make_graph([
            param("p0", "f32", [3, 8], 0),
            param("p1", "f32", [8, 24], 1),
            dot("d", "f32", [3, 24], "p0", "p1"),
            make_op("c", "constant", "f32", []),
            make_op("b", "broadcast", "f32", [3, 24], ["c"], attrs={"dimensions": []}),
            make_op("m", "multiply", "f32", [3, 24], ["d", "b"]),
        ])
        analysis = FusionAnalysis.execute(graph)
        c = graph.get_op_by_name("c")
        assert analysis.iter_spec(Scope.OUTPUT, c, 0) is None
        assert analysis.iter_spec(Scope.OUTPUT, c, 1) is None
        assert analysis.tensor_iteration_spec(Scope.OUTPUT, c).dimensions() == []

    def test_result_with_two_users_fails(self):
        graph = make_graph([
            param("p0", "f32", [3, 8], 0),
            param("p1", "f32", [8, 24], 1),
            dot("d", "f32", [3, 24], "p0", "p1"),
            make_op("n", "negate", "f32", [3, 24], ["d"]),
            make_op("a", "add", "f32", [3, 24], ["d", "n"]),
        ])
        with pytest.raises(FusionAnalysisError, match="exactly one user"):
            FusionAnalysis.execute(graph)


class TestRowReduction:
    def test_elementwise_body(self):
        graph = make_graph([
            param("p", "f32", [1, 97], 0),
            make_op("e", "exponential", "f32", [1, 97], ["p"]),
        ])
        analysis = FusionAnalysis.execute(graph)
        assert _frags(analysis, Scope.OUTPUT, graph.root, 0) == [(1, 97, 0, 97, (97,))]
        assert analysis.iter_spec(Scope.OUTPUT, graph.root, 1) is None
        assert analysis.scope_parameters(Scope.OUTPUT) == {graph.get_op_by_name("p").id}

    def test_reduce_and_broadcast_back(self):
        graph = make_graph([
            param("p", "f32", [4, 97], 0),
            make_op("c", "constant", "f32", []),
            make_op("r", "reduce", "f32", [4], ["p", "c"], attrs={"dimensions": [1]}),
            make_op("b", "broadcast", "f32", [4, 97], ["r"], attrs={"dimensions": [0]}),
            make_op("s", "subtract", "f32", [4, 97], ["p", "b"]),
        ])
        analysis = FusionAnalysis.execute(graph)
        p = graph.get_op_by_name("p")
        r = graph.get_op_by_name("r")
        assert _frags(analysis, Scope.OUTPUT, graph.root, 0) == [(1, 97, 0, 97, (97,))]
        assert _frags(analysis, Scope.OUTPUT, graph.root, 1) == [(97, 4, 0, 4, (4,))]
        assert _frags(analysis, Scope.OUTPUT, p, 0) == [(1, 97, 0, 97, (97,))]
        assert _frags(analysis, Scope.OUTPUT, p, 1) == [(97, 4, 0, 4, (4,))]
        assert analysis.iter_spec(Scope.OUTPUT, r, 0) is None
        assert _frags(analysis, Scope.OUTPUT, r, 1) == [(1, 4, 0, 4, (4,))]

    def test_broadcast_of_vector(self):
        graph = make_graph([
            param("p", "f32", [127], 0),
            make_op("b", "broadcast", "f32", [125, 127], ["p"], attrs={"dimensions": [1]}),
        ])
        analysis = FusionAnalysis.execute(graph)
        p = graph.get_op_by_name("p")
        assert _frags(analysis, Scope.OUTPUT, graph.root, 0) == [(1, 127, 0, 127, (127,))]
        assert _frags(analysis, Scope.OUTPUT, graph.root, 1) == [(127, 125, 0, 125, (125,))]
        assert _frags(analysis, Scope.OUTPUT, p, 0) == [(1, 127, 0, 127, (127,))]
        assert analysis.iter_spec(Scope.OUTPUT, p, 1) is None


class TestContractViolations:
    def test_two_dots(self):
        graph = make_graph([
            param("p0", "f32", [4, 4], 0),
            param("p1", "f32", [4, 4], 1),
            dot("d0", "f32", [4, 4], "p0", "p1"),
            dot("d1", "f32", [4, 4], "d0", "p1"),
        ])
        with pytest.raises(FusionAnalysisError, match="2 dots"):
            FusionAnalysis.execute(graph)

    def test_two_reductions(self):
        graph = make_graph([
            param("p", "f32", [4, 8], 0),
            make_op("c", "constant", "f32", []),
            make_op("r0", "reduce", "f32", [4], ["p", "c"], attrs={"dimensions": [1]}),
            make_op("r1", "reduce", "f32", [4], ["p", "c"], attrs={"dimensions": [1]}),
            make_op("a", "add", "f32", [4], ["r0", "r1"]),
        ])
        with pytest.raises(FusionAnalysisError, match="2 reductions"):
            FusionAnalysis.execute(graph)

    def test_diamond_with_different_orders(self):
        graph = make_graph([
            param("p0", "f32", [4, 4], 0),
            make_op("t", "transpose", "f32", [4, 4], ["p0"], attrs={"dimensions": [1, 0]}),
            make_op("a", "add", "f32", [4, 4], ["p0", "t"]),
            param("p1", "f32", [4, 3], 1),
            dot("d", "f32", [4, 3], "a", "p1"),
        ])
        with pytest.raises(FusionAnalysisError, match="two different iteration orders"):
            FusionAnalysis.execute(graph)

    def test_empty_computation(self):
        with pytest.raises(FusionAnalysisError, match="empty"):
            FusionAnalysis.execute(TensorGraph("empty"))

    def test_unfusible_operand(self):
        graph = make_graph([
            param("p0", "u32", [8, 4], 0),
            make_op("s", "shift-right-logical", "u32", [8, 4], ["p0", "p0"]),
            param("p1", "u32", [4, 3], 1),
            dot("d", "f32", [8, 3], "s", "p1"),
        ])
        with pytest.raises(FusionAnalysisError, match="cannot propagate through 's'"):
            FusionAnalysis.execute(graph)
