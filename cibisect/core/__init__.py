"""Core orchestration components for CI bisection."""

from cibisect.core.classifier import RevisionClassifier
from cibisect.core.continuation import (
    BuildContext,
    ChainStep,
    ContinuationBridge,
    ContinuationParameters,
    is_continuation,
)
from cibisect.core.orchestrator import (
    BisectConfigurationError,
    BisectError,
    BisectionStuckError,
    BisectOrchestrator,
    BisectPhase,
    BisectRun,
    SearchLogAdapter,
)


__all__ = [
    "BisectOrchestrator",
    "BisectPhase",
    "BisectRun",
    "BisectError",
    "BisectConfigurationError",
    "BisectionStuckError",
    "SearchLogAdapter",
    "RevisionClassifier",
    "ContinuationBridge",
    "ContinuationParameters",
    "BuildContext",
    "ChainStep",
    "is_continuation",
]
