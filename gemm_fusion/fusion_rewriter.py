"""Extraction of a planned GEMM region into a fusion op.

The fused body is built scope by scope: first one body parameter per
boundary op (LHS, RHS, OUTPUT, each in first-encounter order), then copies of
the admitted ops in topological order, then the dot and its output chain.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gemm_fusion.fusion_analysis import Scope
from gemm_fusion.ir import TensorGraph, TensorOp

if TYPE_CHECKING:
    from gemm_fusion.fusion_planner import FusionPlan

logger = logging.getLogger(__name__)

FUSION_KIND_GEMM = "gemm_fusion"


def _unique_name(graph: TensorGraph, name: str) -> str:
    if graph.get_op_by_name(name) is None:
        return name
    i = 1
    while graph.get_op_by_name(f"{name}.{i}") is not None:
        i += 1
    return f"{name}.{i}"


def _clone(body: TensorGraph, op: TensorOp, operands: list[int]) -> TensorOp:
    return body.add_op(
        _unique_name(body, op.name), op.opcode, op.dtype, op.shape, operands,
        layout=op.layout, attrs=op.attrs,
    )


def build_fused_computation(graph: TensorGraph, plan: FusionPlan) -> tuple[TensorGraph, list[int]]:
    """Fused body of ``plan`` and the ids of the ops feeding its parameters."""
    dot = graph.op(plan.dot_id)
    body = TensorGraph(f"{dot.name}_computation")
    fusion_operands: list[int] = []
    memos: dict[Scope, dict[int, int]] = {}
    for scope in Scope:
        memo: dict[int, int] = {}
        for op_id in plan.scopes[scope].parameters:
            source = graph.op(op_id)
            param = body.add_op(
                _unique_name(body, f"{source.name}_param"), "parameter", source.dtype, source.shape,
                layout=source.layout, attrs={"number": len(fusion_operands)},
            )
            memo[op_id] = param.id
            fusion_operands.append(op_id)
        memos[scope] = memo

    topological = graph.topological_order()

    def clone_scope(scope: Scope):
        memo = memos[scope]
        fused = plan.scopes[scope].fused
        for op_id in topological:
            if op_id in fused and op_id not in memo:
                op = graph.op(op_id)
                memo[op_id] = _clone(body, op, [memo[i] for i in op.operands]).id

    clone_scope(Scope.LHS)
    clone_scope(Scope.RHS)
    lhs_root = memos[Scope.LHS][dot.operands[0]]
    rhs_root = memos[Scope.RHS][dot.operands[1]]
    memos[Scope.OUTPUT][dot.id] = _clone(body, dot, [lhs_root, rhs_root]).id
    clone_scope(Scope.OUTPUT)
    body.set_root(memos[Scope.OUTPUT][plan.output_id])
    return body, fusion_operands


def fuse_plan(graph: TensorGraph, plan: FusionPlan) -> TensorOp:
    """Replace the region of ``plan`` in ``graph`` by one fusion op."""
    dot = graph.op(plan.dot_id)
    output = graph.op(plan.output_id)
    # Pin the root: the fusion is appended and would otherwise become it.
    graph.set_root(graph.root.id)

    body, operands = build_fused_computation(graph, plan)
    fusion = graph.add_op(
        _unique_name(graph, f"gemm_fusion.{dot.name}"), "fusion", output.dtype, output.shape,
        operands, layout=output.layout, body=body, fusion_kind=FUSION_KIND_GEMM,
    )
    graph.replace_all_uses(output.id, fusion.id)
    removed = graph.remove_dead_ops([dot.id, *plan.output_chain, *plan.fused_ops()])
    logger.debug("'%s': %d ops in body, %d ops removed from '%s'",
                 fusion.name, len(body), removed, graph.name)
    return fusion
