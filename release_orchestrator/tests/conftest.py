"""
Shared fixtures for the Release Orchestrator test suite.
"""

from typing import Callable, Dict, Optional

import pytest

from release_orchestrator.service.adapters import AdapterRegistry, ToolAdapter
from release_orchestrator.service.attestations import AttestationChain, KeyManager
from release_orchestrator.service.events import EventBus, MemorySink
from release_orchestrator.service.models import (
    PipelineDefinition,
    PolicyThresholds,
    StageDefinition,
    StageKind,
    StageResult,
    ToolConfig,
)
from release_orchestrator.service.orchestrator import PipelineOrchestrator

from release_orchestrator.tests.helpers import APPROVERS, FakeClock, RecordingSleep, ScriptedAdapter, clean_scan

TOOLS = ("sast", "sca", "builder", "deployer")


@pytest.fixture
def definition() -> PipelineDefinition:
    """SAST and SCA in parallel, then Build, then Deploy."""
    scan_limits = PolicyThresholds(max_critical=0, max_high=0)
    return PipelineDefinition(
        name="release-pipeline",
        version="1.0.0",
        stages=[
            StageDefinition(name="SAST", kind=StageKind.SCAN, tool="sast", thresholds=scan_limits),
            StageDefinition(name="SCA", kind=StageKind.SCAN, tool="sca", thresholds=scan_limits),
            StageDefinition(
                name="Build",
                kind=StageKind.BUILD,
                tool="builder",
                depends_on=["SAST", "SCA"],
                parallel=False,
            ),
            StageDefinition(
                name="Deploy",
                kind=StageKind.DEPLOY,
                tool="deployer",
                depends_on=["Build"],
                parallel=False,
                retryable=False,
                target={"environment": "production"},
            ),
        ],
        approvers=APPROVERS,
        tools={name: ToolConfig(kind="fixed", result=StageResult()) for name in TOOLS},
    )


@pytest.fixture
def key_manager() -> KeyManager:
    return KeyManager("test-key-v1", secret="test-signing-secret")


@pytest.fixture
def chain(key_manager: KeyManager) -> AttestationChain:
    return AttestationChain(key_manager)


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backoff() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_orchestrator(
    definition: PipelineDefinition,
    chain: AttestationChain,
    sink: MemorySink,
    backoff: RecordingSleep,
) -> Callable[..., PipelineOrchestrator]:
    """Build an orchestrator whose tools are scripted adapters."""

    def factory(
        adapters: Optional[Dict[str, ToolAdapter]] = None, **kwargs
    ) -> PipelineOrchestrator:
        adapters = adapters or {}
        registry = AdapterRegistry()
        for name in TOOLS:
            default = ScriptedAdapter(clean_scan() if name in ("sast", "sca") else StageResult())
            registry.register(name, adapters.get(name, default))
        kwargs.setdefault("sleep", backoff)
        return PipelineOrchestrator(
            kwargs.pop("definition", definition),
            adapters=registry,
            chain=kwargs.pop("chain", chain),
            events=kwargs.pop("events", EventBus([sink])),
            **kwargs,
        )

    return factory
