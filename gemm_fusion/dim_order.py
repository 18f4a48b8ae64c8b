"""Dimension orders and their propagation through tensor ops.

Architecture:
    A DimensionOrder describes one tensor in terms of the anchor's logical
    dimensions: the tensor's flat memory is a sequence of DimFragments
    (physical order, minor to major), each belonging to one anchor dimension
    ("dst_dim_number"). dim_fragments_orders records, per anchor dimension, the
    fragment indices in logical order (minor to major).

    get_propagated_dim_orders() maps the order of one tensor across an op, in
    either direction, to the orders of the op's other tensors. The same
    transfer rules serve the fusion planner (deciding what may be fused) and
    the fusion analysis (describing what was fused), so the two cannot
    disagree about a fused region.

    Transfer rules are registered per OpCategory in _TRANSFER_RULES; every
    category a fusion region may contain must have an entry (checked at import).

Design trade-offs:
    - Physical equivalence: two orders are interchangeable when they produce
      the same TensorIterationSpec. Comparing raw fragment lists would reject
      orders that differ only in how degenerate fragments were split.

    - Splits: a dimension may only be split into several physically separate
      pieces when it is the "splittable" dimension (the LHS non-contracting
      one and its image in the output), and only once. The size of the major
      piece is a requirement every tensor of the fusion must agree on.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, auto
from typing import Callable

from gemm_fusion.ir import TensorGraph, TensorOp
from gemm_fusion.iteration_spec import Fragment, TensorIterationSpec
from gemm_fusion.op_classify import OpCategory, classify_op, reshape_is_bitcast

NO_DIMENSION = -1
NO_SPLIT_REQUIREMENT = 1

# Labels of the two dimensions of a row-reduction (softmax) anchor
SOFTMAX_REDUCTION_DIMENSION = 0
SOFTMAX_BATCH_DIMENSION = 1

DEFAULT_MIN_CONCAT_FRAGMENT_SIZE = 128


class TransformDirection(Enum):
    OUTPUT_TO_INPUT = auto()
    INPUT_TO_OUTPUT = auto()


@dataclass(frozen=True)
class FusionDecision:
    """Truthy when an op may be fused; otherwise carries the reason."""
    explanation: str = ""

    def __bool__(self) -> bool:
        return not self.explanation

    def __str__(self) -> str:
        return self.explanation or "ok"


ALLOW = FusionDecision()


@dataclass
class DimFragment:
    dst_dim_number: int
    count: int
    slice_start: int = 0
    sliced_count: int | None = None

    def __post_init__(self):
        if self.sliced_count is None:
            self.sliced_count = self.count

    @property
    def slice_limit(self) -> int:
        return self.slice_start + self.sliced_count

    @property
    def is_sliced(self) -> bool:
        return self.count != self.sliced_count

    def __str__(self) -> str:
        s = f"{self.dst_dim_number}:{self.count}"
        if self.is_sliced:
            s += f"[{self.slice_start}:{self.slice_limit}]"
        return s


@dataclass(frozen=True)
class DotProperties:
    """Anchor facts the transfer rules depend on."""
    noncontracting_dimension: int = NO_DIMENSION
    splittable_dimension: int = NO_DIMENSION


@dataclass(frozen=True)
class DotRequirements:
    """Constraints collected while propagating through a fusion scope."""
    splittable_dimension_major_part_size: int = NO_SPLIT_REQUIREMENT


@dataclass
class DimensionOrder:
    tensor_fragments_order: list[DimFragment] = field(default_factory=list)
    dim_fragments_orders: dict[int, list[int]] = field(default_factory=dict)

    @classmethod
    def from_dot_operand_or_output(cls, op: TensorOp) -> DimensionOrder:
        """One fragment per physical dimension, labelled with its logical index."""
        order = cls()
        for dim in op.layout:
            order.dim_fragments_orders.setdefault(dim, []).append(len(order.tensor_fragments_order))
            order.tensor_fragments_order.append(DimFragment(dim, op.shape[dim]))
        return order

    @classmethod
    def from_softmax_root(cls, op: TensorOp) -> DimensionOrder:
        """Minor-most dimension is the reduced one; everything else is batch."""
        order = cls()
        for i, dim in enumerate(op.layout):
            label = SOFTMAX_REDUCTION_DIMENSION if i == 0 else SOFTMAX_BATCH_DIMENSION
            order.dim_fragments_orders.setdefault(label, []).append(len(order.tensor_fragments_order))
            order.tensor_fragments_order.append(DimFragment(label, op.shape[dim]))
        return order

    def to_tensor_iteration_spec(self, drop_degenerate_dims: bool = False) -> TensorIterationSpec:
        """Strided fragments per dimension, in physical order.

        A trailing count-1 fragment is dropped when its dimension has others.
        With ``drop_degenerate_dims`` a dimension made only of count-1
        fragments is dropped as well.
        """
        dims: dict[int, list[dict]] = {}
        accumulated_stride = 1
        last_dim: int | None = None

        def drop_degenerate_tail(dim: int | None):
            if dim is not None and len(dims.get(dim, ())) > 1 and dims[dim][-1]["count"] == 1:
                dims[dim].pop()

        for fragment in self.tensor_fragments_order:
            spec = dims.setdefault(fragment.dst_dim_number, [])
            if last_dim == fragment.dst_dim_number:
                # Physically adjacent pieces of one dimension: merge them back.
                if spec and spec[-1]["subfragments"] and spec[-1]["subfragments"][-1] == 1:
                    spec[-1]["subfragments"].pop()
                if fragment.count > 1 and spec:
                    last = spec[-1]
                    last["slice_start"] = fragment.slice_start * last["count"]
                    last["slice_limit"] = fragment.slice_limit * last["count"]
                    last["count"] *= fragment.count
                    last["subfragments"].append(fragment.sliced_count)
            else:
                drop_degenerate_tail(last_dim)
                spec.append({
                    "stride": accumulated_stride,
                    "count": fragment.count,
                    "slice_start": fragment.slice_start,
                    "slice_limit": fragment.slice_limit,
                    "subfragments": [fragment.sliced_count],
                })
            accumulated_stride *= fragment.count
            last_dim = fragment.dst_dim_number
        drop_degenerate_tail(last_dim)

        return TensorIterationSpec({
            dim: tuple(
                Fragment(
                    stride=f["stride"],
                    count=f["count"],
                    slice_start=f["slice_start"],
                    slice_limit=f["slice_limit"],
                    subfragments=tuple(f["subfragments"]),
                )
                for f in frags
            )
            for dim, frags in dims.items()
            if frags and not (drop_degenerate_dims and all(f["count"] == 1 for f in frags))
        })

    def is_physically_equivalent(self, other: DimensionOrder) -> bool:
        return self.to_tensor_iteration_spec().is_physically_equivalent(other.to_tensor_iteration_spec())

    def __str__(self) -> str:
        frags = " - ".join(str(f) for f in self.tensor_fragments_order)
        dims = " ".join(f"{d}:{seq}" for d, seq in sorted(self.dim_fragments_orders.items()))
        return f"{frags} | {dims}"


@dataclass
class DimOrdersAndReqs:
    dim_orders: dict[int, DimensionOrder]  # op id -> order of that op's output
    requirements: DotRequirements


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------

def get_requirements_if_supported_order(
    order: DimensionOrder, properties: DotProperties | None,
) -> DotRequirements | FusionDecision:
    """Check that an order can be tiled; return the split it imposes."""
    if properties is None:
        return DotRequirements()
    split_dim_major_part = NO_SPLIT_REQUIREMENT
    fragments = order.tensor_fragments_order
    for dim_index, dim_fragments in order.dim_fragments_orders.items():
        for i in dim_fragments[:-1]:
            if fragments[i].is_sliced:
                return FusionDecision("Sliced non-major-most fragment.")
        group_counter = 0
        last_seen_group_last_fragment_index = -1
        pos = 0
        while pos < len(dim_fragments):
            grouped_size = fragments[dim_fragments[pos]].count
            # Physically contiguous fragments have consecutive indices.
            while pos + 1 < len(dim_fragments) and dim_fragments[pos + 1] == dim_fragments[pos] + 1:
                pos += 1
                grouped_size *= fragments[dim_fragments[pos]].count
            if grouped_size == 1:
                pos += 1
                continue
            if last_seen_group_last_fragment_index > dim_fragments[pos]:
                return FusionDecision("Transpose within a dimension.")
            group_counter += 1
            if group_counter > 1:
                if dim_index != properties.splittable_dimension:
                    return FusionDecision("Unsupported split of a dimension.")
                if group_counter > 2:
                    return FusionDecision("2nd split of a splittable dimension.")
                if split_dim_major_part not in (NO_SPLIT_REQUIREMENT, grouped_size):
                    return FusionDecision("Conflicting splits of splittable dimension.")
                split_dim_major_part = grouped_size
            last_seen_group_last_fragment_index = dim_fragments[pos]
            pos += 1
    return DotRequirements(split_dim_major_part)


def combine_requirements(
    a: DotRequirements, b: DotRequirements | FusionDecision,
) -> DotRequirements | FusionDecision:
    if isinstance(b, FusionDecision):
        return b
    if a.splittable_dimension_major_part_size == NO_SPLIT_REQUIREMENT:
        return b
    if b.splittable_dimension_major_part_size == NO_SPLIT_REQUIREMENT:
        return a
    if a.splittable_dimension_major_part_size == b.splittable_dimension_major_part_size:
        return a
    return FusionDecision("Conflicting splits of splittable dimension.")


# ---------------------------------------------------------------------------
# Transfer rules
# ---------------------------------------------------------------------------

# Rule signature:
#   (graph, op, direction, src_order, properties, min_concat_fragment_size)
#       -> {op id: DimensionOrder} | FusionDecision
TransferRule = Callable[
    [TensorGraph, TensorOp, TransformDirection, DimensionOrder, "DotProperties | None", int],
    "dict[int, DimensionOrder] | FusionDecision",
]


def _source_op(graph: TensorGraph, op: TensorOp, direction: TransformDirection) -> TensorOp:
    """The tensor whose order is known."""
    if direction is TransformDirection.OUTPUT_TO_INPUT:
        return op
    return graph.op(op.operands[0])


def _dest_ops(graph: TensorGraph, op: TensorOp, direction: TransformDirection) -> list[TensorOp]:
    """The tensors whose orders are being computed."""
    if direction is TransformDirection.OUTPUT_TO_INPUT:
        return [graph.op(i) for i in dict.fromkeys(op.operands)]
    return [op]


def _propagate_leaf(graph, op, direction, src_order, properties, min_concat):
    if direction is not TransformDirection.OUTPUT_TO_INPUT:
        return FusionDecision("Leaf ops can only be reached toward operands.")
    return {}


def _propagate_elementwise(graph, op, direction, src_order, properties, min_concat):
    if direction is TransformDirection.OUTPUT_TO_INPUT:
        return {operand.id: src_order for operand in _dest_ops(graph, op, direction)}
    return {op.id: src_order}


def _propagate_bitcast(graph, op, direction, src_order, properties, min_concat):
    """Re-cut the physical fragment sequence along the destination's dimensions."""
    dst = _dest_ops(graph, op, direction)[0]
    src_fragments = src_order.tensor_fragments_order
    dst_fragments: list[DimFragment] = []
    src_to_dst: dict[int, list[int]] = {i: [] for i in range(len(src_fragments))}
    dst_dims = [dst.shape[d] for d in dst.layout]
    dst_dim_pos = 0
    dst_remaining_size = 1

    def add(src_index: int, fragment: DimFragment):
        dst_fragments.append(fragment)
        src_to_dst[src_index].append(len(dst_fragments) - 1)

    for src_index, src_fragment in enumerate(src_fragments):
        if dst_remaining_size >= src_fragment.count:
            if dst_remaining_size % src_fragment.count:
                return FusionDecision("Unsupported bitcast.")
            # The source fragment fits into the current destination dimension.
            add(src_index, replace(src_fragment))
            dst_remaining_size //= src_fragment.count
            continue
        src_remaining_size = src_fragment.count
        if dst_remaining_size > 1:
            # Finish the destination dimension opened by the previous fragment.
            if src_remaining_size % dst_remaining_size or src_fragment.is_sliced:
                return FusionDecision("Unsupported bitcast.")
            add(src_index, DimFragment(src_fragment.dst_dim_number, dst_remaining_size))
            src_remaining_size //= dst_remaining_size
            dst_remaining_size = 1
        while src_remaining_size > 1:
            if dst_dim_pos >= len(dst_dims):
                return FusionDecision("Unsupported bitcast.")
            dst_dim_size = dst_dims[dst_dim_pos]
            new_fragment_size = dst_dim_size
            if dst_dim_size > src_remaining_size:
                if dst_dim_size % src_remaining_size:
                    return FusionDecision("Unsupported bitcast.")
                dst_remaining_size = dst_dim_size // src_remaining_size
                new_fragment_size = src_remaining_size
            if src_fragment.is_sliced:
                return FusionDecision("Unsupported bitcast.")
            add(src_index, DimFragment(src_fragment.dst_dim_number, new_fragment_size))
            src_remaining_size //= new_fragment_size
            dst_dim_pos += 1
    if dst_remaining_size != 1:
        return FusionDecision("Unsupported bitcast.")

    # Remaining major destination dimensions must be degenerate; they become
    # size-1 pieces of the most major fragment.
    for size in dst_dims[dst_dim_pos:]:
        if size != 1:
            return FusionDecision("Unsupported bitcast.")
        if dst_fragments:
            add(len(src_fragments) - 1, DimFragment(dst_fragments[-1].dst_dim_number, 1))

    dst_order = DimensionOrder(tensor_fragments_order=dst_fragments)
    for dim_index, sequence in src_order.dim_fragments_orders.items():
        mapped = [d for s in sequence for d in src_to_dst[s]]
        if mapped:
            dst_order.dim_fragments_orders[dim_index] = mapped
    return {dst.id: dst_order}


def _logical_index_of_labeled_dimension(op: TensorOp, order: DimensionOrder, label: int) -> int | None:
    fragments = order.tensor_fragments_order
    pos = 0
    for dim in op.layout:
        fragments_size = 1
        while fragments_size < op.shape[dim] and pos < len(fragments):
            fragments_size *= fragments[pos].count
            if fragments[pos].dst_dim_number == label:
                return dim
            pos += 1
    return None


def _propagate_dim_altering(graph, op, direction, src_order, properties, min_concat):
    """Transpose, copy, broadcast, slice, concatenate and reduce."""
    src = _source_op(graph, op, direction)
    src_fragments = src_order.tensor_fragments_order
    if len(src_fragments) < src.rank:
        return FusionDecision("Cannot propagate further from trivial sized tensor.")

    # Group fragments into the source's physical dimensions.
    src_physical: list[list[int]] = []
    pos = 0
    for dim in src.layout:
        size = src.shape[dim]
        group: list[int] = []
        accumulated = 1
        while True:
            if pos >= len(src_fragments):
                return FusionDecision("Dimension order does not match the tensor shape.")
            accumulated *= src_fragments[pos].count
            group.append(pos)
            pos += 1
            if accumulated >= size:
                break
        if accumulated != size:
            return FusionDecision("Dimension order does not match the tensor shape.")
        src_physical.append(group)

    src_logical: list[list[int]] = [[] for _ in range(src.rank)]
    for i, dim in enumerate(src.layout):
        src_logical[dim] = src_physical[i]

    result: dict[int, DimensionOrder] = {}
    for dst in _dest_ops(graph, op, direction):
        fragments = [replace(f) for f in src_fragments]
        # Fragments created by this op: (index, label), appended after src ones
        created: list[int] = []

        if op.opcode == "transpose":
            permutation = list(op.attrs["dimensions"])
            if direction is TransformDirection.INPUT_TO_OUTPUT:
                inverse = [0] * len(permutation)
                for i, p in enumerate(permutation):
                    inverse[p] = i
                permutation = inverse
            dst_logical: list[list[int]] = [[] for _ in permutation]
            for i, p in enumerate(permutation):
                dst_logical[p] = src_logical[i]
        elif op.opcode == "broadcast":
            dst_logical = [src_logical[d] for d in op.attrs["dimensions"]]
        elif op.opcode == "copy":
            if dst.shape != src.shape:
                return FusionDecision("Copy changes the logical shape.")
            dst_logical = src_logical
        elif op.opcode == "slice":
            dst_logical = src_logical
            starts, limits = op.attrs["starts"], op.attrs["limits"]
            for dim in range(dst.rank):
                if limits[dim] - starts[dim] == dst.shape[dim]:
                    continue
                if len(dst_logical[dim]) > 1:
                    return FusionDecision("Slicing of fragmented dimension.")
                fragment = fragments[dst_logical[dim][0]]
                fragment.count = dst.shape[dim]
                # Slicing an already sliced dimension adds the offsets.
                fragment.slice_start = fragment.slice_start + starts[dim]
        elif op.opcode == "concatenate":
            concat_dim = op.attrs["dimension"]
            dst_logical = src_logical
            if len(dst_logical[concat_dim]) != 1:
                return FusionDecision("Can't propagate concatenation of a fragmented dimension.")
            index = dst_logical[concat_dim][0]
            fragments[index] = DimFragment(fragments[index].dst_dim_number, dst.shape[concat_dim])
        elif op.opcode == "reduce":
            if dst.id != op.operands[0]:
                # Scalar init value.
                result[dst.id] = DimensionOrder()
                continue
            reduced_dim = op.attrs["dimensions"][0]
            dst_logical = list(src_logical)
            fragments.append(DimFragment(SOFTMAX_REDUCTION_DIMENSION, dst.shape[reduced_dim]))
            created.append(len(fragments) - 1)
            dst_logical.insert(reduced_dim, [len(fragments) - 1])
        else:
            return FusionDecision(f"Dimension order propagation through {op.opcode} is not implemented.")

        if len(dst_logical) != dst.rank:
            return FusionDecision(f"Unexpected rank change through {op.opcode}.")

        dst_order = DimensionOrder()
        src_to_dst: dict[int, int] = {}
        dims_present: set[int] = set()
        for dim in dst.layout:
            for index in dst_logical[dim]:
                src_to_dst[index] = len(dst_order.tensor_fragments_order)
                dims_present.add(fragments[index].dst_dim_number)
                dst_order.tensor_fragments_order.append(fragments[index])
        for dim_index, sequence in src_order.dim_fragments_orders.items():
            for index in sequence:
                if index not in src_to_dst:
                    if op.opcode == "broadcast" and src_fragments[index].count > 1 and dim_index in dims_present:
                        return FusionDecision("Unsupported broadcast.")
                    continue
                dst_order.dim_fragments_orders.setdefault(dim_index, []).append(src_to_dst[index])
        for index in created:
            label = fragments[index].dst_dim_number
            dst_order.dim_fragments_orders.setdefault(label, []).append(src_to_dst[index])
            dst_order.dim_fragments_orders[label].sort()
        result[dst.id] = dst_order
    return result


def _propagate_broadcast(graph, op, direction, src_order, properties, min_concat):
    if direction is not TransformDirection.OUTPUT_TO_INPUT:
        return FusionDecision("Unsupported broadcast direction.")
    return _propagate_dim_altering(graph, op, direction, src_order, properties, min_concat)


def _propagate_slice(graph, op, direction, src_order, properties, min_concat):
    if direction is not TransformDirection.OUTPUT_TO_INPUT:
        return FusionDecision("Unsupported slice direction.")
    return _propagate_dim_altering(graph, op, direction, src_order, properties, min_concat)


def _propagate_concatenate(graph, op, direction, src_order, properties, min_concat):
    if direction is not TransformDirection.OUTPUT_TO_INPUT or properties is None:
        return FusionDecision("Unsupported concatenation.")
    label = properties.noncontracting_dimension
    if len(src_order.dim_fragments_orders.get(label, [])) > 1:
        return FusionDecision("Concatenations on split non-contracting dimensions are unsupported.")
    dim = _logical_index_of_labeled_dimension(op, src_order, label)
    if dim is None or dim != op.attrs["dimension"]:
        return FusionDecision("Unsupported concatenation.")
    for operand in graph.operand_ops(op.id):
        if operand.shape[dim] % min_concat:
            return FusionDecision("One or more operands of concatenation can not be perfectly tiled.")
    return _propagate_dim_altering(graph, op, direction, src_order, properties, min_concat)


def _propagate_reduce(graph, op, direction, src_order, properties, min_concat):
    if direction is not TransformDirection.OUTPUT_TO_INPUT or properties is not None:
        return FusionDecision("Reductions are only supported as the row reduction of a softmax.")
    operand = graph.op(op.operands[0])
    if list(op.attrs.get("dimensions", [])) != [operand.rank - 1]:
        return FusionDecision("Only a reduction of the last dimension is supported.")
    return _propagate_dim_altering(graph, op, direction, src_order, properties, min_concat)


def _propagate_reshape(graph, op, direction, src_order, properties, min_concat):
    if not reshape_is_bitcast(graph, op):
        return FusionDecision("Non-bitcast reshape.")
    return _propagate_bitcast(graph, op, direction, src_order, properties, min_concat)


def _not_fusible(graph, op, direction, src_order, properties, min_concat):
    return FusionDecision(f"Unimplemented instruction: {op.opcode}.")


_TRANSFER_RULES: dict[OpCategory, TransferRule] = {
    OpCategory.PARAMETER: _propagate_leaf,
    OpCategory.CONSTANT: _propagate_leaf,
    OpCategory.ELEMENTWISE: _propagate_elementwise,
    OpCategory.CONVERT: _propagate_elementwise,
    OpCategory.BITCAST: _propagate_bitcast,
    OpCategory.RESHAPE: _propagate_reshape,
    OpCategory.TRANSPOSE: _propagate_dim_altering,
    OpCategory.COPY: _propagate_dim_altering,
    OpCategory.BROADCAST: _propagate_broadcast,
    OpCategory.SLICE: _propagate_slice,
    OpCategory.CONCATENATE: _propagate_concatenate,
    OpCategory.REDUCE: _propagate_reduce,
    OpCategory.DOT: _not_fusible,
    OpCategory.UNSUPPORTED: _not_fusible,
}


def check_transfer_rules(rules: dict[OpCategory, TransferRule]):
    """Raise if an op category has no transfer rule."""
    missing = set(OpCategory) - set(rules)
    if missing:
        names = ", ".join(sorted(c.name for c in missing))
        raise RuntimeError(f"No dimension order transfer rule for op categories: {names}")


check_transfer_rules(_TRANSFER_RULES)


def get_propagated_dim_orders(
    graph: TensorGraph,
    op: TensorOp,
    direction: TransformDirection,
    src_order: DimensionOrder,
    properties: DotProperties | None,
    min_concat_fragment_size: int = DEFAULT_MIN_CONCAT_FRAGMENT_SIZE,
) -> dict[int, DimensionOrder] | FusionDecision:
    """Orders of the tensors on the other side of ``op``.

    OUTPUT_TO_INPUT: ``src_order`` describes op's result; returns its operands.
    INPUT_TO_OUTPUT: ``src_order`` describes op's operand; returns op's result.
    """
    rule = _TRANSFER_RULES[classify_op(op.opcode)]
    return rule(graph, op, direction, src_order, properties, min_concat_fragment_size)


def get_propagated_dim_orders_and_requirements(
    graph: TensorGraph,
    op: TensorOp,
    direction: TransformDirection,
    src_order: DimensionOrder,
    properties: DotProperties | None,
    min_concat_fragment_size: int = DEFAULT_MIN_CONCAT_FRAGMENT_SIZE,
) -> DimOrdersAndReqs | FusionDecision:
    orders = get_propagated_dim_orders(graph, op, direction, src_order, properties, min_concat_fragment_size)
    if isinstance(orders, FusionDecision):
        return orders
    requirements: DotRequirements | FusionDecision = DotRequirements()
    for order in orders.values():
        requirements = combine_requirements(requirements, get_requirements_if_supported_order(order, properties))
        if isinstance(requirements, FusionDecision):
            return requirements
    return DimOrdersAndReqs(orders, requirements)
