# Onboarding engine
from .capture_pipeline import CapturePipeline
from .liveness import LivenessChallenge, LivenessOrchestrator, score_challenges
from .pending_guard import KYCStatusSnapshot, PendingRequestGuard
from .workflow import OnboardingWorkflow, WorkflowStage, reconcile_submission

__all__ = [
    "CapturePipeline",
    "LivenessChallenge",
    "LivenessOrchestrator",
    "score_challenges",
    "KYCStatusSnapshot",
    "PendingRequestGuard",
    "OnboardingWorkflow",
    "WorkflowStage",
    "reconcile_submission",
]
