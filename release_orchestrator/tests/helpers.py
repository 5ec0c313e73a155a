"""
Shared test doubles for the Release Orchestrator test suite.

Module: tests/helpers.py
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional, Union

from release_orchestrator.service.models import (
    ApprovalDecision,
    ApprovalTier,
    FindingCounts,
    StageInvocation,
    StageResult,
)
from release_orchestrator.service.orchestrator import PipelineOrchestrator

SIGNATURE = "0123456789abcdef0123456789abcdef01234567"

APPROVERS = {
    "alice": [ApprovalTier.PEER],
    "bob": [ApprovalTier.SECURITY_GATEKEEPER],
    "carol": [ApprovalTier.MISSION_OWNER],
    "dave": [ApprovalTier.PEER, ApprovalTier.SECURITY_GATEKEEPER],
}

TIER_APPROVERS = {
    ApprovalTier.PEER: "alice",
    ApprovalTier.SECURITY_GATEKEEPER: "bob",
    ApprovalTier.MISSION_OWNER: "carol",
}


def clean_scan() -> StageResult:
    return StageResult(findings=FindingCounts(), reference="reports/scan.json")


def scan_with(**counts: int) -> StageResult:
    return StageResult(findings=FindingCounts(**counts), reference="reports/scan.json")


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSleep:
    """Backoff sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ConcurrencyTracker:
    """Counts adapters running at the same time."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0

    def enter(self) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)

    def exit(self) -> None:
        self.current -= 1


class ScriptedAdapter:
    """
    Tool adapter returning scripted outcomes in order.

    Each outcome is a StageResult or an exception to raise; the last outcome
    repeats once the script runs out.
    """

    def __init__(
        self,
        *outcomes: Union[StageResult, Exception],
        delay: float = 0.0,
        tracker: Optional[ConcurrencyTracker] = None,
        started: Optional[asyncio.Event] = None,
        release: Optional[asyncio.Event] = None,
    ) -> None:
        self.outcomes = list(outcomes) or [StageResult()]
        self.delay = delay
        self.tracker = tracker
        self.started = started
        self.release = release
        self.calls: List[StageInvocation] = []

    async def invoke(self, request: StageInvocation) -> StageResult:
        self.calls.append(request)
        if self.tracker:
            self.tracker.enter()
        try:
            if self.started:
                self.started.set()
            if self.release:
                await self.release.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
            if isinstance(outcome, Exception):
                raise outcome
            return outcome.model_copy(deep=True)
        finally:
            if self.tracker:
                self.tracker.exit()


async def approve_all(
    orchestrator: PipelineOrchestrator,
    change_id: str,
    tiers: Optional[List[ApprovalTier]] = None,
) -> None:
    """Approve the given tiers (all by default) in order."""
    for tier in tiers or list(TIER_APPROVERS):
        await orchestrator.submit_approval(
            change_id, tier, ApprovalDecision.APPROVE, TIER_APPROVERS[tier], SIGNATURE
        )
