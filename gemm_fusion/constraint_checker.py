"""Validate the GEMM fusions of a rewritten graph."""

from __future__ import annotations

from dataclasses import dataclass

from gemm_fusion.fusion_analysis import FusionAnalysis, FusionAnalysisError, Scope
from gemm_fusion.fusion_config import DEFAULT_FUSION_CONFIG, FusionConfig
from gemm_fusion.fusion_rewriter import FUSION_KIND_GEMM
from gemm_fusion.ir import TensorGraph, TensorOp


@dataclass
class FusionViolation:
    fusion_name: str
    message: str


def _check_interface(graph: TensorGraph, fusion: TensorOp) -> list[FusionViolation]:
    body = fusion.body
    violations = []
    params = body.parameters()
    if len(params) != len(fusion.operands):
        violations.append(FusionViolation(
            fusion.name,
            f"{len(fusion.operands)} operands but {len(params)} body parameters",
        ))
        return violations
    for number, (param, operand) in enumerate(zip(params, graph.operand_ops(fusion.id))):
        if param.attrs.get("number") != number:
            violations.append(FusionViolation(fusion.name, f"Parameter '{param.name}' is not number {number}"))
        elif (param.dtype, param.shape) != (operand.dtype, operand.shape):
            violations.append(FusionViolation(
                fusion.name,
                f"Parameter {number} is {param.dtype}{param.shape} "
                f"but operand '{operand.name}' is {operand.dtype}{operand.shape}",
            ))
    root = body.root
    if (root.dtype, root.shape) != (fusion.dtype, fusion.shape):
        violations.append(FusionViolation(
            fusion.name, f"Body root '{root.name}' does not match the fusion result",
        ))
    return violations


def check_fusions(graph: TensorGraph, config: FusionConfig = DEFAULT_FUSION_CONFIG) -> list[FusionViolation]:
    """Check every GEMM fusion of ``graph``. Returns list of violations (empty = OK)."""
    violations = []

    for fusion in graph.ops():
        if fusion.opcode != "fusion" or fusion.fusion_kind != FUSION_KIND_GEMM:
            continue
        if fusion.body is None:
            violations.append(FusionViolation(fusion.name, "Fusion has no body"))
            continue
        violations.extend(_check_interface(graph, fusion))

        body = fusion.body
        for op in body.ops():
            if op.opcode != "parameter" and not body.users(op.id) and not body.is_root(op.id):
                violations.append(FusionViolation(fusion.name, f"Dead op in body: '{op.name}'"))

        try:
            analysis = FusionAnalysis.execute(body)
        except FusionAnalysisError as e:
            violations.append(FusionViolation(fusion.name, f"Analysis failed: {e}"))
            continue
        for scope in Scope:
            count = len(analysis.scope_parameters(scope))
            if count > config.max_params_per_scope:
                violations.append(FusionViolation(
                    fusion.name,
                    f"{scope.name} reads {count} parameters "
                    f"(limit {config.max_params_per_scope})",
                ))

    return violations
