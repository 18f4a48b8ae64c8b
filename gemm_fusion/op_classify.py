"""Op classification for GEMM fusion.

Each opcode is classified into one category that determines which dimension
order transfer rule applies when a fusion region grows through it:

- ELEMENTWISE: same shape in and out; orders are copied to every operand
- CONVERT: elementwise change of element type
- BITCAST / RESHAPE: physical reinterpretation (merge/split of fragments)
- TRANSPOSE / COPY / BROADCAST / SLICE / CONCATENATE / REDUCE: dimension-altering
- PARAMETER / CONSTANT: leaves of a computation
- DOT: the matmul anchor
- UNSUPPORTED: everything else (fusion barrier)
"""

from __future__ import annotations

from enum import Enum, auto

from gemm_fusion.ir import FLOAT_DTYPES, TensorGraph, TensorOp


class OpCategory(Enum):
    PARAMETER = auto()
    CONSTANT = auto()
    ELEMENTWISE = auto()
    CONVERT = auto()
    BITCAST = auto()
    RESHAPE = auto()
    TRANSPOSE = auto()
    COPY = auto()
    BROADCAST = auto()
    SLICE = auto()
    CONCATENATE = auto()
    REDUCE = auto()
    DOT = auto()
    UNSUPPORTED = auto()


_UNARY_ELEMENTWISE = {
    "abs", "ceil", "cosine", "exponential", "floor", "log", "logistic",
    "negate", "not", "rsqrt", "sign", "sine", "sqrt", "tanh",
}

_BINARY_ELEMENTWISE = {
    "add", "and", "atan2", "compare", "divide", "maximum", "minimum",
    "multiply", "or", "power", "remainder", "subtract", "xor",
}

_TERNARY_ELEMENTWISE = {"clamp", "select"}

# Elementwise ops only defined on floating-point operands
_FLOAT_ONLY = {
    "atan2", "cosine", "exponential", "log", "logistic", "power", "rsqrt",
    "sine", "sqrt", "tanh",
}

# Elementwise ops only defined on integer / predicate operands
_BITWISE_ONLY = {"and", "not", "or", "xor"}


_OP_CATEGORY_TABLE: dict[str, OpCategory] = {
    "parameter": OpCategory.PARAMETER,
    "constant": OpCategory.CONSTANT,
    "convert": OpCategory.CONVERT,
    "bitcast": OpCategory.BITCAST,
    "reshape": OpCategory.RESHAPE,
    "transpose": OpCategory.TRANSPOSE,
    "copy": OpCategory.COPY,
    "broadcast": OpCategory.BROADCAST,
    "slice": OpCategory.SLICE,
    "concatenate": OpCategory.CONCATENATE,
    "reduce": OpCategory.REDUCE,
    "dot": OpCategory.DOT,
}
for _opcode in _UNARY_ELEMENTWISE | _BINARY_ELEMENTWISE | _TERNARY_ELEMENTWISE:
    _OP_CATEGORY_TABLE[_opcode] = OpCategory.ELEMENTWISE


def classify_op(opcode: str) -> OpCategory:
    return _OP_CATEGORY_TABLE.get(opcode, OpCategory.UNSUPPORTED)


def register_op_category(opcode: str, category: OpCategory):
    """Classify a custom opcode (e.g. a new elementwise math op)."""
    _OP_CATEGORY_TABLE[opcode] = category


def is_elementwise(op: TensorOp) -> bool:
    return classify_op(op.opcode) in (OpCategory.ELEMENTWISE, OpCategory.CONVERT)


def is_scalar_constant(op: TensorOp) -> bool:
    return op.opcode == "constant" and op.is_scalar


def is_parameter_like(op: TensorOp) -> bool:
    """Leaves that always become fusion parameters."""
    return op.opcode == "parameter" or (op.opcode == "constant" and not is_scalar_constant(op))


def elementwise_supports_dtype(op: TensorOp, operand_dtype: str) -> bool:
    """Whether an elementwise op is defined for its operands' element type."""
    if op.opcode in _FLOAT_ONLY:
        return operand_dtype in FLOAT_DTYPES
    if op.opcode in _BITWISE_ONLY:
        return operand_dtype not in FLOAT_DTYPES
    return True


def reshape_is_bitcast(graph: TensorGraph, op: TensorOp) -> bool:
    """A reshape is a bitcast when both sides are row-major once unit dims are ignored."""
    operand = graph.op(op.operands[0])
    return _is_row_major(operand) and _is_row_major(op)


def _is_row_major(op: TensorOp) -> bool:
    dims = [d for d in op.layout if op.shape[d] != 1]
    return all(a > b for a, b in zip(dims, dims[1:]))
