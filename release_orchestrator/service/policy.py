"""
Policy Evaluator.

Converts normalized stage results into pass/fail decisions. Evaluation is a
pure function of (thresholds, result): every breached threshold is reported,
in a fixed order, so the same inputs always produce the same decision.

Whether the executor itself succeeded is not a policy question: a result with
`success=false` is a tool failure, handled by the scheduler's retry path and
never waivable by risk acceptance.
"""

import logging
from typing import List

from .models import (
    SEVERITIES,
    PolicyDecision,
    PolicyOutcome,
    PolicyThresholds,
    RiskAcceptance,
    StageResult,
)

logger = logging.getLogger(__name__)


def evaluate(thresholds: PolicyThresholds, result: StageResult) -> PolicyDecision:
    """
    Evaluate a stage result against its thresholds.

    Args:
        thresholds: Stage policy limits
        result: Normalized tool result

    Returns:
        Decision listing every breached threshold
    """
    breaches: List[str] = []

    for severity in SEVERITIES:
        limit = thresholds.limit_for(severity)
        if limit is None:
            continue
        if result.findings is None:
            breaches.append(f"{severity} findings not reported")
            continue
        count = getattr(result.findings, severity)
        if count > limit:
            breaches.append(f"{severity} findings {count} > {limit}")

    if thresholds.require_compliant:
        if result.compliant is None:
            breaches.append("compliance status not reported")
        elif not result.compliant:
            breaches.append("compliance check failed")

    if breaches:
        return PolicyDecision(
            outcome=PolicyOutcome.FAIL,
            breaches=breaches,
            block_reason="; ".join(breaches),
        )
    return PolicyDecision(outcome=PolicyOutcome.PASS)


def apply_risk_acceptance(
    decision: PolicyDecision, acceptance: RiskAcceptance, change_id: str, stage: str
) -> PolicyDecision:
    """
    Downgrade a failing decision to pass-with-exception.

    The breaches stay on the decision so the exception remains auditable.
    Passing decisions are returned unchanged.

    Args:
        decision: Decision of the failed stage run
        acceptance: Mission-owner exception
        change_id: Change the decision belongs to
        stage: Stage the decision belongs to

    Raises:
        ValueError: If the acceptance was issued for another change or stage
    """
    if acceptance.change_id != change_id or acceptance.stage != stage:
        raise ValueError(
            f"Risk acceptance for stage '{acceptance.stage}' of change "
            f"{acceptance.change_id} cannot apply to stage '{stage}' of change {change_id}"
        )
    if decision.outcome != PolicyOutcome.FAIL:
        return decision

    logger.info(
        f"Risk accepted by {acceptance.approver} for stage '{stage}' "
        f"of change {change_id}: {decision.block_reason}"
    )
    return PolicyDecision(
        outcome=PolicyOutcome.PASS_WITH_EXCEPTION,
        breaches=list(decision.breaches),
        block_reason=decision.block_reason,
        exception=acceptance,
    )
