"""
Release Orchestrator service implementation.

Contains the pipeline engine components and the FastAPI application.
"""

from .attestations import AttestationChain, KeyManager
from .approvals import ApprovalGateEngine
from .config import OrchestratorConfig, config
from .orchestrator import PipelineOrchestrator
from .scheduler import StageScheduler

__all__ = [
    "config",
    "OrchestratorConfig",
    "AttestationChain",
    "KeyManager",
    "ApprovalGateEngine",
    "PipelineOrchestrator",
    "StageScheduler",
]
