from gemm_fusion.constraint_checker import FusionViolation as FusionViolation
from gemm_fusion.constraint_checker import check_fusions
from gemm_fusion.fusion_analysis import FusionAnalysis as FusionAnalysis
from gemm_fusion.fusion_analysis import FusionAnalysisError as FusionAnalysisError
from gemm_fusion.fusion_analysis import Scope as Scope
from gemm_fusion.fusion_config import DEFAULT_FUSION_CONFIG, FusionConfig
from gemm_fusion.fusion_planner import GemmFusionPlanner
from gemm_fusion.ir import TensorGraph, load_graph, load_graph_from_dict
from gemm_fusion.ir import graph_to_dict as graph_to_dict
from gemm_fusion.iteration_spec import Fragment as Fragment
from gemm_fusion.iteration_spec import TensorIterationSpec as TensorIterationSpec
from gemm_fusion.target_config import AMPERE, TargetConfig
from gemm_fusion.target_config import HOPPER as HOPPER
from gemm_fusion.target_config import VOLTA as VOLTA


def fuse(ir: str | dict, config: FusionConfig = DEFAULT_FUSION_CONFIG,
         target: TargetConfig = AMPERE) -> TensorGraph:
    """Load a graph and run GEMM fusion on it.

    Args:
        ir: Either a path to a graph JSON file (str) or an in-memory graph dict.
    """
    if isinstance(ir, str):
        graph = load_graph(ir)
    else:
        graph = load_graph_from_dict(ir)
    fuse_graph(graph, config, target)
    return graph


def fuse_graph(graph: TensorGraph, config: FusionConfig = DEFAULT_FUSION_CONFIG,
               target: TargetConfig = AMPERE) -> bool:
    """Run GEMM fusion on a graph in place. Returns whether it changed."""
    changed = GemmFusionPlanner(config, target).run(graph)

    violations = check_fusions(graph, config)
    if violations:
        msgs = "\n".join(f"  - [{v.fusion_name}] {v.message}" for v in violations)
        raise ValueError(f"GEMM fusion produced invalid fusions:\n{msgs}")
    return changed
