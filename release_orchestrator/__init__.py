"""
Release Orchestrator.

Approval-gated release pipelines:
- Ordered three-tier human approval (peer, security gatekeeper, mission owner)
- Stage graph execution with parallel groups, retries and fail-fast
- Threshold-based policy evaluation with attributable risk acceptance
- Tamper-evident, signed attestation chain per change

Each change is owned by its own PipelineRun; cross-change views are read-only
projections of the attestation chains.
"""

__version__ = "1.0.0"

from .service.config import OrchestratorConfig, config
from .service.errors import PipelineError
from .service.models import (
    ApprovalDecision,
    ApprovalTier,
    PipelineDefinition,
    PipelineRun,
    PipelineState,
    StageStatus,
)
from .service.orchestrator import PipelineOrchestrator

__all__ = [
    "OrchestratorConfig",
    "config",
    "PipelineError",
    "ApprovalDecision",
    "ApprovalTier",
    "PipelineDefinition",
    "PipelineRun",
    "PipelineState",
    "StageStatus",
    "PipelineOrchestrator",
]
