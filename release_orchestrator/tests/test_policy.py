"""
Tests for the Policy Evaluator.

Module: tests/test_policy.py
"""

from datetime import datetime

import pytest

from release_orchestrator.service.models import (
    FindingCounts,
    PolicyOutcome,
    PolicyThresholds,
    RiskAcceptance,
    StageResult,
)
from release_orchestrator.service.policy import apply_risk_acceptance, evaluate


class TestEvaluate:
    """Test suite for threshold evaluation."""

    @pytest.fixture
    def zero_tolerance(self) -> PolicyThresholds:
        return PolicyThresholds(max_critical=0, max_high=0)

    def test_clean_scan_passes(self, zero_tolerance: PolicyThresholds) -> None:
        """Test scan with no findings against <=0 thresholds."""
        result = StageResult(findings=FindingCounts(critical=0, high=0))

        decision = evaluate(zero_tolerance, result)

        assert decision.outcome == PolicyOutcome.PASS
        assert decision.passed
        assert decision.breaches == []
        assert decision.block_reason is None

    def test_critical_finding_fails_with_reason(self, zero_tolerance: PolicyThresholds) -> None:
        """Test a single critical finding breaches critical<=0."""
        result = StageResult(findings=FindingCounts(critical=1))

        decision = evaluate(zero_tolerance, result)

        assert decision.outcome == PolicyOutcome.FAIL
        assert not decision.passed
        assert decision.breaches == ["critical findings 1 > 0"]
        assert decision.block_reason == "critical findings 1 > 0"

    def test_reports_every_breach_in_fixed_order(self) -> None:
        """Test all breached thresholds are reported, not just the first."""
        thresholds = PolicyThresholds(max_critical=0, max_high=2, max_medium=10)
        result = StageResult(
            findings=FindingCounts(critical=3, high=5, medium=11), success=False
        )

        decision = evaluate(thresholds, result)

        assert decision.breaches == [
            "critical findings 3 > 0",
            "high findings 5 > 2",
            "medium findings 11 > 10",
        ]
        assert decision.block_reason == "; ".join(decision.breaches)

    def test_counts_at_limit_pass(self) -> None:
        """Test counts equal to the limit do not breach."""
        thresholds = PolicyThresholds(max_high=2, max_low=5)
        result = StageResult(findings=FindingCounts(high=2, low=5, info=100))

        assert evaluate(thresholds, result).outcome == PolicyOutcome.PASS

    def test_missing_findings_breach_configured_limits(
        self, zero_tolerance: PolicyThresholds
    ) -> None:
        """Test a scanner that reports no findings cannot pass a finding limit."""
        decision = evaluate(zero_tolerance, StageResult(findings=None))

        assert decision.breaches == [
            "critical findings not reported",
            "high findings not reported",
        ]

    def test_executor_failure_is_not_a_policy_breach(self) -> None:
        """Test a failed execution is left to the scheduler, never risk-acceptable."""
        thresholds = PolicyThresholds()

        assert evaluate(thresholds, StageResult(success=True)).passed
        failed = evaluate(thresholds, StageResult(success=False))
        assert failed.passed
        assert failed.breaches == []

    def test_compliance_required(self) -> None:
        """Test compliance stages need an explicit compliant flag."""
        thresholds = PolicyThresholds(require_compliant=True)

        assert evaluate(thresholds, StageResult(compliant=True)).passed
        assert evaluate(thresholds, StageResult(compliant=False)).breaches == [
            "compliance check failed"
        ]
        assert evaluate(thresholds, StageResult()).breaches == [
            "compliance status not reported"
        ]

    def test_evaluation_is_deterministic(self, zero_tolerance: PolicyThresholds) -> None:
        """Test same inputs always yield the same decision."""
        result = StageResult(findings=FindingCounts(critical=2, high=1))

        decisions = [evaluate(zero_tolerance, result) for _ in range(5)]

        assert all(d == decisions[0] for d in decisions)


class TestRiskAcceptance:
    """Test suite for risk acceptance reclassification."""

    @pytest.fixture
    def acceptance(self) -> RiskAcceptance:
        return RiskAcceptance(
            change_id="C2",
            stage="SCA",
            approver="carol",
            note="Vendor patch scheduled, compensating WAF rule in place",
            accepted_at=datetime(2024, 1, 1),
            original_reason="critical findings 1 > 0",
        )

    def test_failure_becomes_pass_with_exception(self, acceptance: RiskAcceptance) -> None:
        """Test a failing decision is reclassified and keeps its breaches."""
        failed = evaluate(
            PolicyThresholds(max_critical=0), StageResult(findings=FindingCounts(critical=1))
        )

        accepted = apply_risk_acceptance(failed, acceptance, "C2", "SCA")

        assert accepted.outcome == PolicyOutcome.PASS_WITH_EXCEPTION
        assert accepted.passed
        assert accepted.breaches == ["critical findings 1 > 0"]
        assert accepted.exception == acceptance
        assert failed.outcome == PolicyOutcome.FAIL

    def test_passing_decision_unchanged(self, acceptance: RiskAcceptance) -> None:
        """Test accepting risk on a pass is a no-op."""
        passed = evaluate(PolicyThresholds(), StageResult())

        assert apply_risk_acceptance(passed, acceptance, "C2", "SCA") is passed

    @pytest.mark.parametrize(
        "change_id,stage",
        [("C2", "SAST"), ("C9", "SCA")],
    )
    def test_acceptance_for_another_stage_rejected(
        self, acceptance: RiskAcceptance, change_id: str, stage: str
    ) -> None:
        """Test an acceptance only applies to the stage and change it names."""
        failed = evaluate(
            PolicyThresholds(max_critical=0), StageResult(findings=FindingCounts(critical=1))
        )

        with pytest.raises(ValueError, match="cannot apply to stage"):
            apply_risk_acceptance(failed, acceptance, change_id, stage)
