"""Iteration space analysis of a fused GEMM (or row-reduction) computation.

Given the body of a fusion built by the planner, FusionAnalysis describes for
every tensor of every scope how the generated kernel walks its memory along
each dimension of the anchor. Analysis of a computation the planner could not
have produced is a contract violation and raises FusionAnalysisError.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum

from gemm_fusion.dim_order import (
    DimensionOrder,
    DimOrdersAndReqs,
    DotProperties,
    DotRequirements,
    FusionDecision,
    TransformDirection,
    combine_requirements,
    get_propagated_dim_orders_and_requirements,
)
from gemm_fusion.ir import TensorGraph, TensorOp
from gemm_fusion.iteration_spec import Fragment, TensorIterationSpec

logger = logging.getLogger(__name__)


class Scope(Enum):
    LHS = 0
    RHS = 1
    OUTPUT = 2


class FusionAnalysisError(RuntimeError):
    """The computation is not one the fusion planner can produce."""


# ---------------------------------------------------------------------------
# Anchor facts shared with the planner
# ---------------------------------------------------------------------------

def noncontracting_dimension(graph: TensorGraph, dot: TensorOp, operand_number: int) -> int:
    prefix = "lhs" if operand_number == 0 else "rhs"
    taken = set(dot.attrs.get(f"{prefix}_contracting_dims", []))
    taken |= set(dot.attrs.get(f"{prefix}_batch_dims", []))
    rank = graph.op(dot.operands[operand_number]).rank
    remaining = [d for d in range(rank) if d not in taken]
    if len(remaining) != 1:
        raise ValueError(f"Dot '{dot.name}' operand {operand_number} must have exactly one non-contracting dimension")
    return remaining[0]


def dot_operand_properties(graph: TensorGraph, dot: TensorOp, operand_number: int) -> DotProperties:
    nc = noncontracting_dimension(graph, dot, operand_number)
    # Only the LHS non-contracting dimension may be split physically.
    return DotProperties(
        noncontracting_dimension=nc,
        splittable_dimension=nc if operand_number == 0 else -1,
    )


def dot_output_properties(dot: TensorOp) -> DotProperties:
    # The LHS non-contracting dimension lands at rank - 2 of the result.
    return DotProperties(
        noncontracting_dimension=dot.rank - 2,
        splittable_dimension=dot.rank - 2,
    )


# ---------------------------------------------------------------------------
# Propagation state of one scope
# ---------------------------------------------------------------------------

class _PropagationContext:
    def __init__(self, graph: TensorGraph, properties: DotProperties | None,
                 requirements: DotRequirements | None = None):
        self.graph = graph
        self.properties = properties
        self.requirements = requirements or DotRequirements()
        self.dim_orders: dict[int, DimensionOrder] = {}

    def combine(self, update: DimOrdersAndReqs) -> FusionDecision:
        # Check everything first so a failed merge leaves no partial state.
        for op_id, order in update.dim_orders.items():
            known = self.dim_orders.get(op_id)
            if known is not None and not known.is_physically_equivalent(order):
                return FusionDecision(
                    f"'{self.graph.op(op_id).name}' is read with two different iteration orders."
                )
        requirements = combine_requirements(self.requirements, update.requirements)
        if isinstance(requirements, FusionDecision):
            return requirements
        self.requirements = requirements
        for op_id, order in update.dim_orders.items():
            self.dim_orders.setdefault(op_id, order)
        return FusionDecision()

    def iteration_spec(self, op_id: int) -> TensorIterationSpec:
        # Row-reduction bodies have no use for dimensions of size 1.
        return self.dim_orders[op_id].to_tensor_iteration_spec(drop_degenerate_dims=self.properties is None)

    def propagate_to_parameters(self, origin: TensorOp, analysis: FusionAnalysis,
                                scope: Scope, stop_at: int | None = None):
        graph = self.graph
        visited = {origin.id}
        queue = deque([origin.id])
        offsets = analysis._concat_offsets[scope]
        while queue:
            op = graph.op(queue.popleft())
            if op.opcode == "parameter":
                analysis._parameters[scope].add(op.id)
            result = get_propagated_dim_orders_and_requirements(
                graph, op, TransformDirection.OUTPUT_TO_INPUT, self.dim_orders[op.id], self.properties,
            )
            if isinstance(result, FusionDecision):
                raise FusionAnalysisError(f"{scope.name}: cannot propagate through '{op.name}': {result}")
            decision = self.combine(result)
            if not decision:
                raise FusionAnalysisError(f"{scope.name}: at '{op.name}': {decision}")
            analysis._iter_specs[scope][op.id] = self.iteration_spec(op.id)

            if op.opcode == "concatenate":
                dim = op.attrs["dimension"]
                offset = offsets.get(op.id, 0)
                for operand in graph.operand_ops(op.id):
                    offsets.setdefault(operand.id, offset)
                    offset += operand.shape[dim]
            elif op.id in offsets:
                for operand_id in op.operands:
                    offsets.setdefault(operand_id, offsets[op.id])

            for operand_id in op.operands:
                if operand_id in visited or operand_id == stop_at:
                    continue
                visited.add(operand_id)
                queue.append(operand_id)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class FusionAnalysis:
    """Per-scope iteration specs and parameters of a fused computation."""

    def __init__(self):
        self._iter_specs: dict[Scope, dict[int, TensorIterationSpec]] = {s: {} for s in Scope}
        self._parameters: dict[Scope, set[int]] = {s: set() for s in Scope}
        self._concat_offsets: dict[Scope, dict[int, int]] = {s: {} for s in Scope}

    @classmethod
    def execute(cls, computation: TensorGraph) -> FusionAnalysis:
        """Analyze a fused computation anchored by one dot or one row reduction."""
        analysis = cls()
        dots = [op for op in computation.ops() if op.opcode == "dot"]
        if len(dots) > 1:
            raise FusionAnalysisError(f"'{computation.name}' contains {len(dots)} dots")
        if dots:
            analysis._execute_for_dot(computation, dots[0])
            return analysis
        reductions = [op for op in computation.ops() if op.opcode == "reduce"]
        if len(reductions) > 1:
            raise FusionAnalysisError(f"'{computation.name}' contains {len(reductions)} reductions")
        if not len(computation):
            raise FusionAnalysisError(f"'{computation.name}' is empty")
        analysis._execute_for_softmax(computation)
        return analysis

    def _execute_for_dot(self, graph: TensorGraph, dot: TensorOp):
        logger.debug("Analyzing dot fusion '%s' anchored at '%s'", graph.name, dot.name)
        lhs_requirements = DotRequirements()
        for scope in (Scope.LHS, Scope.RHS):
            operand = graph.op(dot.operands[scope.value])
            try:
                properties = dot_operand_properties(graph, dot, scope.value)
            except ValueError as e:
                raise FusionAnalysisError(str(e)) from e
            context = _PropagationContext(graph, properties)
            context.dim_orders[operand.id] = DimensionOrder.from_dot_operand_or_output(operand)
            context.propagate_to_parameters(operand, self, scope)
            if scope is Scope.LHS:
                lhs_requirements = context.requirements

        # The RHS cannot be split, so only the LHS constrains the output.
        context = _PropagationContext(graph, dot_output_properties(dot), lhs_requirements)
        context.dim_orders[dot.id] = DimensionOrder.from_dot_operand_or_output(dot)
        output = dot
        while not graph.is_root(output.id):
            users = graph.users(output.id)
            if len(users) != 1:
                raise FusionAnalysisError(f"'{output.name}' must have exactly one user inside the fusion")
            source = output
            output = graph.op(users[0])
            result = get_propagated_dim_orders_and_requirements(
                graph, output, TransformDirection.INPUT_TO_OUTPUT, context.dim_orders[source.id],
                context.properties,
            )
            if isinstance(result, FusionDecision):
                raise FusionAnalysisError(f"OUTPUT: cannot propagate through '{output.name}': {result}")
            decision = context.combine(result)
            if not decision:
                raise FusionAnalysisError(f"OUTPUT: at '{output.name}': {decision}")
        self._iter_specs[Scope.OUTPUT][output.id] = context.iteration_spec(output.id)
        if output is not dot:
            context.propagate_to_parameters(output, self, Scope.OUTPUT, stop_at=dot.id)

    def _execute_for_softmax(self, graph: TensorGraph):
        root = graph.root
        logger.debug("Analyzing row-reduction fusion '%s' rooted at '%s'", graph.name, root.name)
        context = _PropagationContext(graph, None)
        context.dim_orders[root.id] = DimensionOrder.from_softmax_root(root)
        context.propagate_to_parameters(root, self, Scope.OUTPUT)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def iter_spec(self, scope: Scope, op: TensorOp | int, dimension: int) -> tuple[Fragment, ...] | None:
        """Fragments of ``op`` along anchor ``dimension``; None if it is invariant or not in scope."""
        op_id = op if isinstance(op, int) else op.id
        spec = self._iter_specs[scope].get(op_id)
        if spec is None:
            return None
        return spec[dimension]

    def tensor_iteration_spec(self, scope: Scope, op: TensorOp | int) -> TensorIterationSpec | None:
        op_id = op if isinstance(op, int) else op.id
        return self._iter_specs[scope].get(op_id)

    def scope_parameters(self, scope: Scope) -> frozenset[int]:
        """Ids of the computation parameters read by ``scope``."""
        return frozenset(self._parameters[scope])

    def concat_offset(self, scope: Scope, op: TensorOp | int) -> int | None:
        """Offset of ``op`` along a concatenated dimension, if it feeds a concatenation."""
        op_id = op if isinstance(op, int) else op.id
        return self._concat_offsets[scope].get(op_id)
