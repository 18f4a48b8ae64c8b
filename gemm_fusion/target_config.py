"""Hardware target configuration for GEMM fusion."""

from __future__ import annotations

from dataclasses import dataclass, field

from gemm_fusion.ir import TensorGraph, TensorOp

# Element types every target can load and compute on inside a fused kernel
_BASE_DTYPES = frozenset({"pred", "s8", "s16", "s32", "f16", "f32"})


@dataclass(frozen=True)
class TargetConfig:
    """Hardware-specific constants for a target GPU generation."""
    name: str = "ampere"
    compute_capability: tuple[int, int] = (8, 0)
    # dtype -> multiple every GEMM dimension must have for the library path
    padding_multiples: dict[str, int] = field(default_factory=dict)

    @property
    def supports_region_growth(self) -> bool:
        """Pre-Ampere targets fuse no elementwise math besides conversions."""
        return self.compute_capability >= (8, 0)

    @property
    def supported_dtypes(self) -> frozenset[str]:
        if self.compute_capability >= (8, 0):
            return _BASE_DTYPES | {"bf16"}
        return _BASE_DTYPES

    def __hash__(self):
        return hash((self.name, self.compute_capability))


VOLTA = TargetConfig(
    name="volta",
    compute_capability=(7, 0),
    padding_multiples={"s8": 4, "f16": 8},
)
AMPERE = TargetConfig()
HOPPER = TargetConfig(name="hopper", compute_capability=(9, 0))


# ---------------------------------------------------------------------------
# Library GEMM divisibility (target-dependent, consulted by the fusion planner)
# ---------------------------------------------------------------------------
# Pre-Ampere tensor cores need f16 / s8 GEMM sizes in fixed multiples. A GEMM
# that would need padding is always handed to the fused kernel, even when
# nothing else would be fused into it.

def _non_batch_dims(op: TensorOp, batch_dims: list[int]) -> list[int]:
    return [op.shape[d] for d in range(op.rank) if d not in batch_dims]


def requires_padding(graph: TensorGraph, dot: TensorOp, config: TargetConfig = AMPERE) -> bool:
    """True when a dot's operands or result break the library's size multiples."""
    lhs, rhs = graph.operand_ops(dot.id)
    checks = [
        (lhs, dot.attrs.get("lhs_batch_dims", [])),
        (rhs, dot.attrs.get("rhs_batch_dims", [])),
        (dot, list(range(len(dot.attrs.get("lhs_batch_dims", []))))),
    ]
    for op, batch_dims in checks:
        multiple = config.padding_multiples.get(op.dtype)
        if multiple is None:
            continue
        if any(size % multiple for size in _non_batch_dims(op, batch_dims)):
            return True
    return False
