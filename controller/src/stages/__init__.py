from controller.src.stages.resolver import resolve_services, candidate_tag
from controller.src.stages.build import BuildStage
from controller.src.stages.scan import ScanStage
from controller.src.stages.gate import GateEvaluator, evaluate
from controller.src.stages.push import PushStage
from controller.src.stages.network_policy import NetworkPolicyGraph, NetworkPolicyEnforcer
from controller.src.stages.deploy import DeployStage
from controller.src.stages.rollout import RolloutStage

__all__ = [
    "resolve_services",
    "candidate_tag",
    "BuildStage",
    "ScanStage",
    "GateEvaluator",
    "evaluate",
    "PushStage",
    "NetworkPolicyGraph",
    "NetworkPolicyEnforcer",
    "DeployStage",
    "RolloutStage",
]
