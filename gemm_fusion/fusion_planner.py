"""GEMM fusion planning: grow fusion regions around matmul anchors.

Architecture:
    For every eligible dot, plan() grows three scopes with the transfer rules
    of dim_order:

    - LHS / RHS: a work-list walk from the dot operand toward producers. Each
      visited op is either admitted (its operands are visited next) or left as
      a boundary, which becomes a parameter of the fusion.
    - OUTPUT: the dot result is followed toward its single user while that
      user can be fused; the user's other operands (parameters, broadcasts)
      are then walked toward producers inside the OUTPUT scope.

    fusion_rewriter.fuse_plan() then extracts the plan into a fusion op.

Design trade-offs:
    - Separate scope copies: an op admitted by two scopes is copied into each
      scope of the fused body. The scopes iterate over different dimensions of
      the anchor, so one copy could not serve both.

    - Budget re-queue: an op whose admission would exceed the per-scope
      parameter budget is pushed to the back of the work-list instead of being
      rejected, so cheaper ops (parameters, unary ops, broadcasts of scalars)
      get admitted first. When only re-queued ops remain they become
      parameters.

    - Cross-scope fixed point: an op admitted by one scope but left as a
      parameter by another would be both computed inside the kernel and kept
      alive outside it. Such an op is first retried with priority in the
      scope that rejected it; if it still does not fit there it is kept out of
      every scope. Each round grows the priority or the excluded set, so the
      rounds terminate.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from gemm_fusion.dim_order import (
    ALLOW,
    DimensionOrder,
    DimOrdersAndReqs,
    DotProperties,
    DotRequirements,
    FusionDecision,
    TransformDirection,
    combine_requirements,
    get_propagated_dim_orders,
    get_propagated_dim_orders_and_requirements,
)
from gemm_fusion.fusion_analysis import (
    Scope,
    dot_operand_properties,
    dot_output_properties,
    noncontracting_dimension,
)
from gemm_fusion.fusion_config import DEFAULT_FUSION_CONFIG, FusionConfig
from gemm_fusion.fusion_rewriter import fuse_plan
from gemm_fusion.ir import TensorGraph, TensorOp, element_bytes
from gemm_fusion.op_classify import (
    OpCategory,
    classify_op,
    elementwise_supports_dtype,
    is_elementwise,
    is_parameter_like,
)
from gemm_fusion.target_config import AMPERE, TargetConfig, requires_padding

logger = logging.getLogger(__name__)

# (graph, dot, target) -> whether the library GEMM would need padded operands
PaddingChecker = Callable[[TensorGraph, TensorOp, TargetConfig], bool]

# Ops that leave the memory walk unchanged; fusing only these gains nothing
_TRIVIAL_OPCODES = {"bitcast", "reshape"}


@dataclass
class ScopePlan:
    """The region one scope of a fusion covers."""
    scope: Scope
    dim_orders: dict[int, DimensionOrder]
    fused: set[int]
    parameters: list[int]  # boundary ops, first-encounter order
    requirements: DotRequirements


@dataclass
class FusionPlan:
    dot_id: int
    scopes: dict[Scope, ScopePlan]
    output_chain: list[int] = field(default_factory=list)

    @property
    def output_id(self) -> int:
        """The op whose uses the fusion replaces."""
        return self.output_chain[-1] if self.output_chain else self.dot_id

    def fused_ops(self) -> set[int]:
        fused: set[int] = set()
        for scope_plan in self.scopes.values():
            fused |= scope_plan.fused
        return fused

    def parameters(self) -> list[int]:
        """Fusion operands: scope order (LHS, RHS, OUTPUT), then first encounter."""
        return [p for scope in Scope for p in self.scopes[scope].parameters]

    def inconsistent_ops(self) -> set[int]:
        """Ops fused by one scope but kept as a parameter by another."""
        boundary: set[int] = set()
        for scope_plan in self.scopes.values():
            boundary.update(scope_plan.parameters)
        return self.fused_ops() & boundary

    def is_trivial(self, graph: TensorGraph) -> bool:
        return all(graph.op(i).opcode in _TRIVIAL_OPCODES for i in self.fused_ops())


# ---------------------------------------------------------------------------
# Profitability
# ---------------------------------------------------------------------------

def input_minus_output_bytes(graph: TensorGraph, op: TensorOp) -> int:
    return sum(o.byte_size for o in graph.operand_ops(op.id)) - op.byte_size


def _is_parameter_or_constant(op: TensorOp) -> bool:
    return op.opcode in ("parameter", "constant")


def is_input_worth_fusing(graph: TensorGraph, op: TensorOp, io_tolerance_bytes: int) -> bool:
    """Fusing toward producers must not make the kernel read much more data."""
    if input_minus_output_bytes(graph, op) <= io_tolerance_bytes:
        return True
    if graph.user_count(op.id) > 1:
        return False
    operands = graph.operand_ops(op.id)
    if op.opcode == "slice" and all(_is_parameter_or_constant(o) for o in operands):
        return True
    return all(_is_parameter_or_constant(o) and graph.user_count(o.id) == 1 for o in operands)


def is_output_worth_fusing(graph: TensorGraph, op: TensorOp, io_tolerance_bytes: int) -> bool:
    """Fusing toward users must not make the kernel write much less than it computes."""
    return graph.is_root(op.id) or input_minus_output_bytes(graph, op) >= -io_tolerance_bytes


def is_conversion_worth_fusing(graph: TensorGraph, op: TensorOp) -> FusionDecision:
    operand = graph.op(op.operands[0])
    if operand.byte_size > op.byte_size:
        return FusionDecision("Conversion shrinks the data; leave it to its producer.")
    return ALLOW


def narrowing_conversion_preferred(graph: TensorGraph, op: TensorOp, dot: TensorOp) -> bool:
    """Tie-break: a GEMM operand converted from a narrower type is read narrow.

    Applies to a convert that is itself an operand of the anchor and whose
    source element type is smaller than its result type. Fusing it lets the
    kernel load the narrow data, so such a convert is admitted past the
    parameter budget, the visit cap, the cross-scope exclusion and the
    profitability checks. Dtype support and propagation still apply.
    """
    if op.opcode != "convert" or op.id not in dot.operands:
        return False
    return element_bytes(graph.op(op.operands[0]).dtype) < element_bytes(op.dtype)


def _num_added_parameters(op: TensorOp) -> int:
    """How the parameter count changes when ``op`` is admitted."""
    if is_parameter_like(op):
        return 0
    # The op's own output stops being a parameter, its operands become ones.
    return len(set(op.operands)) - 1


# ---------------------------------------------------------------------------
# Scope walk
# ---------------------------------------------------------------------------

class _ScopeWalk:
    """Work-list growth of one scope toward producers."""

    def __init__(self, planner: GemmFusionPlanner, graph: TensorGraph, dot: TensorOp,
                 scope: Scope, properties: DotProperties, requirements: DotRequirements,
                 forced: set[int], forbidden: set[int], visits: list[int]):
        self.planner = planner
        self.graph = graph
        self.dot = dot
        self.scope = scope
        self.properties = properties
        self.requirements = requirements
        self.forced = forced
        self.forbidden = forbidden
        self.visits = visits  # shared one-element counter across scopes
        self.dim_orders: dict[int, DimensionOrder] = {}
        self.fused: set[int] = set()
        self.discovered: list[int] = []
        self.inputs: set[int] = set()
        self._queue: deque[int] = deque()

    @property
    def budget(self) -> int:
        return self.planner.config.max_params_per_scope

    def discover(self, op_id: int, order: DimensionOrder):
        self.dim_orders[op_id] = order
        self.discovered.append(op_id)
        self.inputs.add(op_id)
        if op_id in self.forced:
            self._queue.appendleft(op_id)
        else:
            self._queue.append(op_id)

    def run(self):
        num_requeued = 0
        while len(self._queue) > num_requeued:
            op_id = self._queue.popleft()
            op = self.graph.op(op_id)
            if (len(self.inputs) + _num_added_parameters(op) > self.budget
                    and not narrowing_conversion_preferred(self.graph, op, self.dot)):
                # The count may still drop while other ops are processed.
                self._queue.append(op_id)
                num_requeued += 1
                continue
            num_requeued = 0
            result = self._admission(op)
            if isinstance(result, FusionDecision):
                if not is_parameter_like(op):
                    logger.debug("%s: not fusing '%s': %s", self.scope.name, op.name, result)
                continue
            self.requirements = result.requirements
            self.inputs.discard(op_id)
            self.fused.add(op_id)
            for operand_id in dict.fromkeys(op.operands):
                if operand_id not in self.dim_orders:
                    self.discover(operand_id, result.dim_orders[operand_id])
        for op_id in self._queue:
            logger.debug("%s: '%s' stays a parameter (budget of %d)",
                         self.scope.name, self.graph.op(op_id).name, self.budget)

    def _admission(self, op: TensorOp) -> DimOrdersAndReqs | FusionDecision:
        graph = self.graph
        config = self.planner.config
        if is_parameter_like(op):
            return FusionDecision("Parameter.")
        preferred = narrowing_conversion_preferred(graph, op, self.dot)
        if op.id in self.forbidden and not preferred:
            return FusionDecision("Kept outside so every scope reads the same value.")
        if self.visits[0] >= config.max_visited_ops and not preferred:
            return FusionDecision("Visited op limit reached.")
        self.visits[0] += 1

        decision = self.planner.check_dtypes(graph, op)
        if not decision:
            return decision

        result = get_propagated_dim_orders_and_requirements(
            graph, op, TransformDirection.OUTPUT_TO_INPUT, self.dim_orders[op.id],
            self.properties, config.min_concat_fragment_size,
        )
        if isinstance(result, FusionDecision):
            return result
        requirements = combine_requirements(self.requirements, result.requirements)
        if isinstance(requirements, FusionDecision):
            return requirements
        for operand_id, order in result.dim_orders.items():
            known = self.dim_orders.get(operand_id)
            if known is not None and not known.is_physically_equivalent(order):
                return FusionDecision(
                    f"'{graph.op(operand_id).name}' is already read with a different iteration order."
                )
        if op.opcode == "concatenate" and any(graph.user_count(i) > 1 for i in op.operands):
            return FusionDecision("Concatenated operands must not be used elsewhere.")

        decision = self._profitable(op, result)
        if not decision:
            if not preferred:
                return decision
            logger.debug("%s: fusing narrowing conversion '%s' despite: %s",
                         self.scope.name, op.name, decision)
        return DimOrdersAndReqs(result.dim_orders, requirements)

    def _profitable(self, op: TensorOp, result: DimOrdersAndReqs) -> FusionDecision:
        graph = self.graph
        if self.planner.fusion_level < 2:
            if op.opcode == "convert":
                return is_conversion_worth_fusing(graph, op)
            if is_elementwise(op):
                return FusionDecision("Elementwise ops are not fused at level 1.")
            return self._input_worth_fusing(op)
        # A binary op whose other input is a broadcast parameter reads little
        # more than the op itself once the broadcast is fused too.
        if is_elementwise(op) and len(op.operands) == 2:
            for operand in graph.operand_ops(op.id):
                if (operand.opcode == "broadcast"
                        and _is_parameter_or_constant(graph.op(operand.operands[0]))
                        and not isinstance(get_propagated_dim_orders(
                            graph, operand, TransformDirection.OUTPUT_TO_INPUT,
                            result.dim_orders[operand.id], self.properties), FusionDecision)):
                    return ALLOW
        return self._input_worth_fusing(op)

    def _input_worth_fusing(self, op: TensorOp) -> FusionDecision:
        if not is_input_worth_fusing(self.graph, op, self.planner.config.io_tolerance_bytes):
            return FusionDecision("Not obviously profitable to fuse as input.")
        return ALLOW

    def to_plan(self) -> ScopePlan:
        return ScopePlan(
            scope=self.scope,
            dim_orders=self.dim_orders,
            fused=set(self.fused),
            parameters=[i for i in self.discovered if i not in self.fused],
            requirements=self.requirements,
        )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------

def check_anchor(graph: TensorGraph, op: TensorOp, target: TargetConfig = AMPERE) -> FusionDecision:
    """Whether ``op`` is a GEMM the fused kernel can compute."""
    if op.opcode != "dot":
        return FusionDecision("Not a dot.")
    lhs_contracting = op.attrs.get("lhs_contracting_dims", [])
    rhs_contracting = op.attrs.get("rhs_contracting_dims", [])
    lhs_batch = op.attrs.get("lhs_batch_dims", [])
    rhs_batch = op.attrs.get("rhs_batch_dims", [])
    if len(lhs_contracting) != 1 or len(rhs_contracting) != 1:
        return FusionDecision("Exactly one contracting dimension per side is supported.")
    if len(lhs_batch) > 1 or len(lhs_batch) != len(rhs_batch):
        return FusionDecision("At most one batch dimension is supported.")
    lhs, rhs = graph.operand_ops(op.id)
    if lhs.rank != len(lhs_batch) + 2 or rhs.rank != len(rhs_batch) + 2:
        return FusionDecision("Each side needs exactly one non-contracting dimension.")
    for t in (lhs, rhs, op):
        if t.dtype not in target.supported_dtypes:
            return FusionDecision(f"Unsupported data type {t.dtype}.")
    if (lhs.shape[noncontracting_dimension(graph, op, 0)] <= 1
            or rhs.shape[noncontracting_dimension(graph, op, 1)] <= 1):
        return FusionDecision("Matrix-vector products are left to the library.")
    return ALLOW


class GemmFusionPlanner:
    """Finds GEMM anchors and replaces them (with fusible neighbours) by fusions."""

    def __init__(self, config: FusionConfig = DEFAULT_FUSION_CONFIG, target: TargetConfig = AMPERE,
                 padding_checker: PaddingChecker = requires_padding):
        self.config = config
        self.target = target
        self.padding_checker = padding_checker

    @property
    def fusion_level(self) -> int:
        if not self.target.supports_region_growth:
            return min(self.config.fusion_level, 1)
        return self.config.fusion_level

    def run(self, graph: TensorGraph) -> bool:
        """Rewrite every profitable GEMM of ``graph``. Returns whether anything changed."""
        changed = False
        for op_id in graph.topological_order():
            if op_id not in graph:
                continue
            op = graph.op(op_id)
            if op.opcode != "dot":
                continue
            decision = check_anchor(graph, op, self.target)
            if not decision:
                logger.debug("Skipping dot '%s': %s", op.name, decision)
                continue
            plan = self.plan(graph, op)
            decision = self.should_rewrite(graph, op, plan)
            if not decision:
                logger.debug("Skipping dot '%s': %s", op.name, decision)
                continue
            fusion = fuse_plan(graph, plan)
            logger.debug("Fused dot '%s' into '%s' with %d operands",
                         op.name, fusion.name, len(fusion.operands))
            changed = True
        return changed

    def check_dtypes(self, graph: TensorGraph, op: TensorOp) -> FusionDecision:
        supported = self.target.supported_dtypes
        if op.dtype not in supported:
            return FusionDecision(f"Unsupported output data type {op.dtype}.")
        for operand in graph.operand_ops(op.id):
            if operand.dtype not in supported:
                return FusionDecision(f"Unsupported input data type {operand.dtype}.")
            if is_elementwise(op) and not elementwise_supports_dtype(op, operand.dtype):
                return FusionDecision(f"{op.opcode} is not defined for {operand.dtype}.")
        return ALLOW

    def should_rewrite(self, graph: TensorGraph, dot: TensorOp, plan: FusionPlan) -> FusionDecision:
        if self.config.gemm_any:
            return ALLOW
        if not plan.is_trivial(graph):
            return ALLOW
        if self.padding_checker(graph, dot, self.target):
            return ALLOW
        return FusionDecision("Pure matmul: nothing to fuse and no padding needed.")

    def plan(self, graph: TensorGraph, dot: TensorOp) -> FusionPlan:
        """Grow all scopes of ``dot`` until they agree on every shared op."""
        forced: set[int] = set()
        forbidden: set[int] = set()
        while True:
            plan = self._plan_once(graph, dot, forced, forbidden)
            # Ops that are already forbidden can only conflict through the
            # narrowing conversion preference; the plan keeps them both ways.
            conflicts = plan.inconsistent_ops() - forbidden
            if not conflicts:
                return plan
            for op_id in sorted(conflicts):
                if op_id in forced:
                    forbidden.add(op_id)
                else:
                    forced.add(op_id)
            logger.debug("Dot '%s': re-planning, %d forced / %d excluded ops",
                         dot.name, len(forced), len(forbidden))

    def _plan_once(self, graph: TensorGraph, dot: TensorOp,
                   forced: set[int], forbidden: set[int]) -> FusionPlan:
        visits = [0]
        scopes: dict[Scope, ScopePlan] = {}
        lhs_requirements = DotRequirements()
        for scope in (Scope.LHS, Scope.RHS):
            operand = graph.op(dot.operands[scope.value])
            walk = _ScopeWalk(self, graph, dot, scope, dot_operand_properties(graph, dot, scope.value),
                              DotRequirements(), forced, forbidden, visits)
            walk.discover(operand.id, DimensionOrder.from_dot_operand_or_output(operand))
            walk.run()
            scopes[scope] = walk.to_plan()
            if scope is Scope.LHS:
                lhs_requirements = walk.requirements

        walk = _ScopeWalk(self, graph, dot, Scope.OUTPUT, dot_output_properties(dot),
                          lhs_requirements, forced, forbidden, visits)
        chain = self._grow_output(graph, dot, walk)
        walk.run()
        scopes[Scope.OUTPUT] = walk.to_plan()
        return FusionPlan(dot_id=dot.id, scopes=scopes, output_chain=chain)

    def _grow_output(self, graph: TensorGraph, dot: TensorOp, walk: _ScopeWalk) -> list[int]:
        """Follow the dot result through fusible single users."""
        chain: list[int] = []
        if self.fusion_level < 2:
            return chain
        walk.dim_orders[dot.id] = DimensionOrder.from_dot_operand_or_output(dot)
        current = dot
        while not graph.is_root(current.id) and graph.user_count(current.id) == 1:
            user = graph.op(graph.users(current.id)[0])
            result = self._output_admission(graph, current, user, walk)
            if isinstance(result, FusionDecision):
                logger.debug("OUTPUT: not fusing '%s': %s", user.name, result)
                break
            walk.requirements = result.requirements
            walk.dim_orders[user.id] = result.dim_orders.pop(user.id)
            walk.fused.add(user.id)
            chain.append(user.id)
            for operand_id, order in result.dim_orders.items():
                walk.discover(operand_id, order)
            current = user
        return chain

    def _output_admission(self, graph: TensorGraph, current: TensorOp, user: TensorOp,
                          walk: _ScopeWalk) -> DimOrdersAndReqs | FusionDecision:
        """Orders of ``user`` and of its newly reached side operands, if it can be fused."""
        if user.id in walk.forbidden:
            return FusionDecision("Kept outside so every scope reads the same value.")
        decision = self.check_dtypes(graph, user)
        if not decision:
            return decision
        new_inputs = 0
        for operand in graph.operand_ops(user.id):
            if operand.id == current.id or operand.id in walk.dim_orders:
                continue
            if operand.opcode in ("parameter", "constant"):
                new_inputs += 1
                continue
            if operand.opcode == "broadcast":
                source = graph.op(operand.operands[0])
                if source.is_scalar or source.opcode == "parameter":
                    new_inputs += 1
                    continue
            return FusionDecision("Has multiple inputs - not properly analyzed yet.")
        if len(walk.inputs) + new_inputs > walk.budget:
            return FusionDecision("Output scope parameter budget exhausted.")
        if classify_op(user.opcode) is OpCategory.DOT:
            return FusionDecision("Dots are not fused into other dots.")
        result = get_propagated_dim_orders_and_requirements(
            graph, user, TransformDirection.INPUT_TO_OUTPUT, walk.dim_orders[current.id],
            walk.properties, self.config.min_concat_fragment_size,
        )
        if isinstance(result, FusionDecision):
            return result
        requirements = combine_requirements(walk.requirements, result.requirements)
        if isinstance(requirements, FusionDecision):
            return requirements
        if not is_output_worth_fusing(graph, user, self.config.io_tolerance_bytes):
            return FusionDecision("Not obviously profitable to fuse as output.")

        user_order = result.dim_orders[user.id]
        side = get_propagated_dim_orders_and_requirements(
            graph, user, TransformDirection.OUTPUT_TO_INPUT, user_order, walk.properties,
            self.config.min_concat_fragment_size,
        )
        if isinstance(side, FusionDecision):
            return side
        requirements = combine_requirements(requirements, side.requirements)
        if isinstance(requirements, FusionDecision):
            return requirements
        orders = {user.id: user_order}
        for operand_id, order in side.dim_orders.items():
            known = walk.dim_orders.get(operand_id)
            if known is None:
                orders[operand_id] = order
            elif not known.is_physically_equivalent(order):
                return FusionDecision(
                    f"'{graph.op(operand_id).name}' is already read with a different iteration order."
                )
        return DimOrdersAndReqs(orders, requirements)


def run_gemm_fusion(graph: TensorGraph, config: FusionConfig = DEFAULT_FUSION_CONFIG,
                    target: TargetConfig = AMPERE) -> bool:
    """Run the GEMM fusion pass over ``graph``. Returns whether it changed."""
    return GemmFusionPlanner(config, target).run(graph)
