"""Tensor program graph: ops, dtypes and JSON loading.

A TensorGraph is a single computation stored as an arena of TensorOps indexed
by integer id. Removing an op leaves a None slot so ids stay stable while a
pass rewrites the graph. User lists are maintained incrementally.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

import ml_dtypes
import numpy as np


# Element types understood by the compiler. Byte widths come from the numpy /
# ml_dtypes dtype objects so sub-byte or exotic floats stay consistent with
# what the runtime allocates.
DTYPES: dict[str, np.dtype] = {
    "pred": np.dtype(np.bool_),
    "s8": np.dtype(np.int8),
    "s16": np.dtype(np.int16),
    "s32": np.dtype(np.int32),
    "s64": np.dtype(np.int64),
    "u8": np.dtype(np.uint8),
    "u16": np.dtype(np.uint16),
    "u32": np.dtype(np.uint32),
    "f16": np.dtype(np.float16),
    "bf16": np.dtype(ml_dtypes.bfloat16),
    "f32": np.dtype(np.float32),
    "f64": np.dtype(np.float64),
    "f8e4m3fn": np.dtype(ml_dtypes.float8_e4m3fn),
    "f8e5m2": np.dtype(ml_dtypes.float8_e5m2),
}

FLOAT_DTYPES = {"f16", "bf16", "f32", "f64", "f8e4m3fn", "f8e5m2"}

# dtype of ops without a tensor value (tuple outputs)
TUPLE_DTYPE = "tuple"


def element_bytes(dtype: str) -> int:
    if dtype == TUPLE_DTYPE:
        return 0
    try:
        return DTYPES[dtype].itemsize
    except KeyError:
        raise ValueError(f"Unknown dtype: {dtype}") from None


def default_layout(rank: int) -> list[int]:
    """Row-major layout: the last logical dimension is minor-most."""
    return list(range(rank - 1, -1, -1))


@dataclass
class TensorOp:
    id: int
    name: str
    opcode: str
    dtype: str
    shape: list[int]
    layout: list[int]  # minor-to-major
    operands: list[int] = field(default_factory=list)
    attrs: dict = field(default_factory=dict)
    body: TensorGraph | None = None  # fused sub-computation
    fusion_kind: str | None = None

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def is_scalar(self) -> bool:
        return self.dtype != TUPLE_DTYPE and not self.shape

    @property
    def num_elements(self) -> int:
        return int(np.prod(self.shape, dtype=np.int64))

    @property
    def byte_size(self) -> int:
        return self.num_elements * element_bytes(self.dtype)


class TensorGraph:
    """A computation: an arena of ops with a single root."""

    def __init__(self, name: str = "main"):
        self.name = name
        self._ops: list[TensorOp | None] = []
        self._users: list[list[int]] = []
        self._by_name: dict[str, int] = {}
        self.root_id: int | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_op(self, name: str, opcode: str, dtype: str, shape: list[int],
               operands: list[int] | tuple[int, ...] = (),
               layout: list[int] | None = None, attrs: dict | None = None,
               body: TensorGraph | None = None,
               fusion_kind: str | None = None) -> TensorOp:
        """Append an op. The newest op becomes the root unless one was set."""
        if name in self._by_name:
            raise ValueError(f"Duplicate op name: {name}")
        for operand_id in operands:
            self.op(operand_id)
        if layout is None:
            layout = default_layout(len(shape))
        if sorted(layout) != list(range(len(shape))):
            raise ValueError(f"Op '{name}': layout {layout} is not a permutation of rank {len(shape)}")
        op = TensorOp(
            id=len(self._ops),
            name=name,
            opcode=opcode,
            dtype=dtype,
            shape=list(shape),
            layout=list(layout),
            operands=list(operands),
            attrs=dict(attrs or {}),
            body=body,
            fusion_kind=fusion_kind,
        )
        self._ops.append(op)
        self._users.append([])
        self._by_name[name] = op.id
        for operand_id in dict.fromkeys(op.operands):
            self._users[operand_id].append(op.id)
        return op

    def set_root(self, op_id: int):
        self.op(op_id)
        self.root_id = op_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def op(self, op_id: int) -> TensorOp:
        if op_id < 0 or op_id >= len(self._ops) or self._ops[op_id] is None:
            raise KeyError(f"No live op with id {op_id} in '{self.name}'")
        return self._ops[op_id]

    def __contains__(self, op_id: int) -> bool:
        return 0 <= op_id < len(self._ops) and self._ops[op_id] is not None

    def __len__(self) -> int:
        return sum(1 for op in self._ops if op is not None)

    @property
    def root(self) -> TensorOp:
        if self.root_id is None:
            # Default root: the last live op
            for op in reversed(self._ops):
                if op is not None:
                    return op
            raise ValueError(f"Graph '{self.name}' is empty")
        return self.op(self.root_id)

    def is_root(self, op_id: int) -> bool:
        return self.root.id == op_id

    def ops(self) -> list[TensorOp]:
        return [op for op in self._ops if op is not None]

    def users(self, op_id: int) -> list[int]:
        self.op(op_id)
        return list(self._users[op_id])

    def user_count(self, op_id: int) -> int:
        return len(self._users[op_id])

    def operand_ops(self, op_id: int) -> list[TensorOp]:
        return [self.op(i) for i in self.op(op_id).operands]

    def get_op_by_name(self, name: str) -> TensorOp | None:
        op_id = self._by_name.get(name)
        return None if op_id is None else self._ops[op_id]

    def parameters(self) -> list[TensorOp]:
        params = [op for op in self.ops() if op.opcode == "parameter"]
        return sorted(params, key=lambda op: op.attrs.get("number", op.id))

    def parameter(self, number: int) -> TensorOp:
        for op in self.ops():
            if op.opcode == "parameter" and op.attrs.get("number") == number:
                return op
        raise KeyError(f"Graph '{self.name}' has no parameter {number}")

    def topological_order(self) -> list[int]:
        """Live op ids with every op after its operands."""
        order: list[int] = []
        state: dict[int, int] = {}  # 1 = on stack, 2 = done
        for start in (op.id for op in self.ops()):
            if start in state:
                continue
            stack = [(start, False)]
            while stack:
                op_id, expanded = stack.pop()
                if expanded:
                    state[op_id] = 2
                    order.append(op_id)
                    continue
                if state.get(op_id) == 2:
                    continue
                if state.get(op_id) == 1:
                    raise ValueError(f"Cycle through op '{self.op(op_id).name}'")
                state[op_id] = 1
                stack.append((op_id, True))
                for operand_id in reversed(self.op(op_id).operands):
                    if state.get(operand_id) != 2:
                        stack.append((operand_id, False))
        return order

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def replace_all_uses(self, old_id: int, new_id: int):
        """Rewire every user of old_id (and the root) to new_id."""
        for user_id in self.users(old_id):
            if user_id == new_id:
                continue
            user = self.op(user_id)
            user.operands = [new_id if i == old_id else i for i in user.operands]
            self._users[old_id].remove(user_id)
            if user_id not in self._users[new_id]:
                self._users[new_id].append(user_id)
        if self.is_root(old_id):
            self.root_id = new_id

    def remove_op(self, op_id: int):
        op = self.op(op_id)
        if self._users[op_id]:
            raise ValueError(f"Cannot remove '{op.name}': it still has users")
        if self.is_root(op_id):
            raise ValueError(f"Cannot remove root op '{op.name}'")
        for operand_id in dict.fromkeys(op.operands):
            self._users[operand_id].remove(op_id)
        del self._by_name[op.name]
        self._ops[op_id] = None

    def remove_dead_ops(self, candidates: list[int] | None = None) -> int:
        """Remove user-less non-root ops; parameters are always kept.

        With ``candidates`` only those ops (and operands that become dead
        because of them) are considered.
        """
        worklist = list(candidates) if candidates is not None else [op.id for op in self.ops()]
        removed = 0
        while worklist:
            op_id = worklist.pop()
            if op_id not in self:
                continue
            op = self.op(op_id)
            if op.opcode == "parameter" or self._users[op_id] or self.is_root(op_id):
                continue
            operands = list(op.operands)
            self.remove_op(op_id)
            removed += 1
            worklist.extend(operands)
        return removed


# ---------------------------------------------------------------------------
# JSON loading
# ---------------------------------------------------------------------------

def _parse_graph(data: dict) -> TensorGraph:
    graph = TensorGraph(data.get("name", "main"))
    for d in data["ops"]:
        operand_ids = []
        for operand_name in d.get("operands", []):
            operand = graph.get_op_by_name(operand_name)
            if operand is None:
                raise ValueError(f"Op '{d['name']}' references unknown operand '{operand_name}'")
            operand_ids.append(operand.id)
        body = _parse_graph(d["body"]) if d.get("body") else None
        graph.add_op(
            name=d["name"],
            opcode=d["opcode"],
            dtype=d.get("dtype", "f32"),
            shape=d.get("shape", []),
            operands=operand_ids,
            layout=d.get("layout"),
            attrs=d.get("attrs", {}),
            body=body,
            fusion_kind=d.get("fusion_kind"),
        )
    if data.get("root") is not None:
        root = graph.get_op_by_name(data["root"])
        if root is None:
            raise ValueError(f"Unknown root op '{data['root']}'")
        graph.set_root(root.id)
    elif len(graph):
        graph.set_root(graph.root.id)
    return graph


def load_graph(path: str) -> TensorGraph:
    """Load a graph JSON file."""
    with open(path) as f:
        data = json.load(f)
    return _parse_graph(data)


def load_graph_from_dict(data: dict) -> TensorGraph:
    """Load a graph from a dict (for testing)."""
    return _parse_graph(data)


def graph_to_dict(graph: TensorGraph) -> dict:
    """Serialize a graph into the dict format accepted by load_graph_from_dict."""
    ops = []
    for op_id in graph.topological_order():
        op = graph.op(op_id)
        d = {
            "name": op.name,
            "opcode": op.opcode,
            "dtype": op.dtype,
            "shape": list(op.shape),
            "layout": list(op.layout),
            "operands": [graph.op(i).name for i in op.operands],
        }
        if op.attrs:
            d["attrs"] = dict(op.attrs)
        if op.body is not None:
            d["body"] = graph_to_dict(op.body)
        if op.fusion_kind is not None:
            d["fusion_kind"] = op.fusion_kind
        ops.append(d)
    return {"name": graph.name, "ops": ops, "root": graph.root.name if len(graph) else None}
