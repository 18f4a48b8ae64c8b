"""Fusion planner configuration."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FusionConfig:
    """Runtime knobs of the GEMM fusion planner.

    Attributes:
        fusion_level: 1 keeps elementwise math other than conversions out
            of the GEMM operands and never grows the output, 2 grows full
            regions in every scope.
        max_params_per_scope: parameter budget of each scope of a fusion.
        max_visited_ops: ops inspected per anchor before growth stops.
        gemm_any: always rewrite eligible GEMMs, even when nothing besides
            parameters would be fused (testing only).
        io_tolerance_bytes: how much a fused op may grow (toward operands) or
            shrink (toward users) the data it moves and still be fused.
        min_concat_fragment_size: every concatenated operand must be a
            multiple of this size along the concatenated dimension.
    """
    fusion_level: int = 2
    max_params_per_scope: int = 4
    max_visited_ops: int = 1000
    gemm_any: bool = False
    io_tolerance_bytes: int = 1024
    min_concat_fragment_size: int = 128

    def __post_init__(self):
        if self.fusion_level < 1:
            raise ValueError(f"fusion_level must be >= 1, got {self.fusion_level}")
        if self.max_params_per_scope < 1:
            raise ValueError(f"max_params_per_scope must be >= 1, got {self.max_params_per_scope}")

    def __repr__(self) -> str:
        return (
            f"FusionConfig("
            f"level={self.fusion_level}, "
            f"max_params={self.max_params_per_scope}, "
            f"gemm_any={self.gemm_any})"
        )


DEFAULT_FUSION_CONFIG = FusionConfig()
