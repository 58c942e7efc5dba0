from stagehand.src.services.git_provider import GitProvider, GitHubProvider, GitProviderError
from stagehand.src.services.build_reconciler import BuildStatusReconciler, ReconcileResult
from stagehand.src.services.dedup import DedupGate, PipelineCache, is_newer_version
from stagehand.src.services.promoter import Promoter, PromotionError
from stagehand.src.services.workflow_engine import WorkflowEngine
from stagehand.src.services.poller import PromotionPoller
from stagehand.src.services.status_reporter import GitStatusReporter, to_scm_status

__all__ = [
    "GitProvider",
    "GitHubProvider",
    "GitProviderError",
    "BuildStatusReconciler",
    "ReconcileResult",
    "DedupGate",
    "PipelineCache",
    "is_newer_version",
    "Promoter",
    "PromotionError",
    "WorkflowEngine",
    "PromotionPoller",
    "GitStatusReporter",
    "to_scm_status",
]
