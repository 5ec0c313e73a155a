"""
Approval Gate Engine.

Module: release_orchestrator/service/approvals.py

Enforces the three-tier review order (peer, security gatekeeper, mission
owner) before a change may execute. Every accepted decision is attested on the
change's chain. A rejection closes the change unless a mission owner invokes
the emergency override path.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from .attestations import AttestationChain
from .errors import (
    ChangeNotOpen,
    DuplicateApproval,
    IncompleteApproval,
    InvalidSignature,
    OutOfOrderApproval,
    TimeoutExpired,
    UnauthorizedApprover,
)
from .events import EventBus, record_transition
from .models import (
    TIER_ORDER,
    ApprovalDecision,
    ApprovalRecord,
    ApprovalTier,
    Attestation,
    PipelineEvent,
    PipelineRun,
    PipelineState,
    SubjectType,
)

logger = logging.getLogger(__name__)

SIGNATURE_PATTERN = re.compile(r"^[A-Za-z0-9+/=_\-]{32,1024}$")


class IdentitySource(Protocol):
    """Supplies the tiers an approver is entitled to sign."""

    def entitlements(self, approver: str) -> Set[ApprovalTier]: ...


class StaticIdentitySource:
    """Entitlements from a fixed approver -> tiers mapping."""

    def __init__(self, mapping: Optional[Dict[str, Iterable[ApprovalTier]]] = None) -> None:
        self._mapping: Dict[str, Set[ApprovalTier]] = {
            approver: {ApprovalTier(t) for t in tiers}
            for approver, tiers in (mapping or {}).items()
        }

    def entitlements(self, approver: str) -> Set[ApprovalTier]:
        return set(self._mapping.get(approver, set()))

    def grant(self, approver: str, tier: ApprovalTier) -> None:
        self._mapping.setdefault(approver, set()).add(tier)


def validate_signature_format(signature: str) -> None:
    """
    Check an approver signature is a well-formed token.

    Signature issuance and cryptographic verification belong to the identity
    provider; only the format is checked here.

    Raises:
        InvalidSignature: If the signature is malformed
    """
    if not signature or not SIGNATURE_PATTERN.match(signature):
        raise InvalidSignature(
            "Signature must be a base64 or hex token of 32-1024 characters"
        )


class ApprovalGateEngine:
    """
    Tracks tier approvals per change and unlocks execution in order.

    Features:
    - Entitlement and signature-format validation
    - Strict tier ordering
    - Idempotent resubmission
    - Rejection closes the change
    - Emergency override of a rejection
    - Approval wait deadline
    """

    def __init__(
        self,
        chain: AttestationChain,
        identity_source: IdentitySource,
        events: Optional[EventBus] = None,
        approval_timeout_seconds: float = 86400,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """
        Initialize the approval gate.

        Args:
            chain: Attestation chain receiving approval records
            identity_source: Approver entitlement lookup
            events: Optional event feed
            approval_timeout_seconds: Approval wait limit (0 disables)
            clock: Time source
        """
        self.chain = chain
        self.identity_source = identity_source
        self.events = events
        self.approval_timeout_seconds = approval_timeout_seconds
        self.clock = clock

    def deadline_for(self, submitted_at: datetime) -> Optional[datetime]:
        if not self.approval_timeout_seconds:
            return None
        return submitted_at + timedelta(seconds=self.approval_timeout_seconds)

    def is_expired(self, run: PipelineRun, now: Optional[datetime] = None) -> bool:
        if run.state != PipelineState.AWAITING_APPROVAL or run.approval_deadline is None:
            return False
        return (now or self.clock()) > run.approval_deadline

    async def expire(self, run: PipelineRun) -> None:
        """Transition a run whose approval wait ran out to `expired`."""
        await record_transition(
            run,
            PipelineState.EXPIRED,
            f"approval wait exceeded {self.approval_timeout_seconds}s "
            f"(pending: {', '.join(t.value for t in self.pending_tiers(run))})",
            self.chain,
            self.events,
        )

    def require_entitlement(self, approver: str, tier: ApprovalTier) -> None:
        if tier not in self.identity_source.entitlements(approver):
            raise UnauthorizedApprover(
                f"Approver '{approver}' is not entitled to sign tier '{tier.value}'",
                approver=approver,
                tier=tier.value,
            )

    def pending_tiers(self, run: PipelineRun) -> List[ApprovalTier]:
        approved = set(run.approved_tiers())
        return [tier for tier in TIER_ORDER if tier not in approved]

    def is_ready_for_execution(self, run: PipelineRun) -> bool:
        """True only if every tier holds an approval, in order, with no rejection."""
        if run.state in (PipelineState.REJECTED, PipelineState.EXPIRED, PipelineState.ABORTED):
            return False
        for tier in TIER_ORDER:
            record = run.approval_for(tier)
            if record is None or not record.decision.is_approval:
                return False
        return True

    async def submit_approval(
        self,
        run: PipelineRun,
        tier: ApprovalTier,
        decision: ApprovalDecision,
        approver: str,
        signature: str,
        risk_note: Optional[str] = None,
    ) -> ApprovalRecord:
        """
        Record one tier decision for a change.

        Args:
            run: Pipeline run of the change
            tier: Tier being decided
            decision: approve / reject / conditionally_approve
            approver: Approver identity
            signature: Approver signature token
            risk_note: Required for conditional approval

        Returns:
            The stored record (the existing one for an identical resubmission)

        Raises:
            ChangeNotOpen: If the change no longer accepts approvals
            TimeoutExpired: If the approval wait ran out
            UnauthorizedApprover: If the approver lacks the tier role
            InvalidSignature: If the signature is malformed
            DuplicateApproval: If the tier already holds a different decision
            OutOfOrderApproval: If a lower tier is not yet approved
        """
        existing = run.approval_for(tier)
        if (
            existing is not None
            and existing.approver == approver
            and existing.decision == decision
        ):
            logger.info(
                f"Ignoring identical resubmission of {tier.value} {decision.value} "
                f"by {approver} for change {run.change_id}"
            )
            return existing

        if self.is_expired(run):
            await self.expire(run)
        if run.state == PipelineState.EXPIRED:
            raise TimeoutExpired(
                f"Approval wait for change {run.change_id} has expired",
                change_id=run.change_id,
                tier=tier.value,
            )
        if run.state == PipelineState.REJECTED:
            raise ChangeNotOpen(
                f"Change {run.change_id} was rejected; approvals are closed "
                f"unless an emergency override is invoked",
                change_id=run.change_id,
                tier=tier.value,
            )
        if run.state != PipelineState.AWAITING_APPROVAL and existing is None:
            raise ChangeNotOpen(
                f"Change {run.change_id} is {run.state.value} and no longer accepts approvals",
                change_id=run.change_id,
                tier=tier.value,
            )

        self.require_entitlement(approver, tier)
        validate_signature_format(signature)

        if existing is not None:
            raise DuplicateApproval(
                f"Tier '{tier.value}' already holds a {existing.decision.value} "
                f"decision by {existing.approver} for change {run.change_id}",
                change_id=run.change_id,
                tier=tier.value,
            )

        missing: List[str] = []
        for lower in tier.lower_tiers():
            lower_record = run.approval_for(lower)
            if lower_record is None or not lower_record.decision.is_approval:
                missing.append(lower.value)
        if missing:
            raise OutOfOrderApproval(
                f"Tier '{tier.value}' cannot decide before {', '.join(missing)} approve "
                f"change {run.change_id}",
                change_id=run.change_id,
                tier=tier.value,
                missing=missing,
            )

        if decision == ApprovalDecision.CONDITIONALLY_APPROVE and not risk_note:
            raise IncompleteApproval(
                "Conditional approval requires a risk acceptance note",
                change_id=run.change_id,
                tier=tier.value,
            )

        record = ApprovalRecord(
            change_id=run.change_id,
            tier=tier,
            approver=approver,
            decision=decision,
            risk_note=risk_note,
            signature=signature,
            timestamp=self.clock(),
        )
        attestation = await self.chain.append(
            run.change_id,
            SubjectType.APPROVAL,
            tier.value,
            {
                "record_id": record.record_id,
                "approver": approver,
                "decision": decision.value,
                "risk_note": risk_note,
                "signature": signature,
            },
        )
        record = record.model_copy(update={"attestation_id": attestation.attestation_id})
        run.approvals.append(record)
        run.updated_at = self.clock()

        logger.info(
            f"Change {run.change_id}: {tier.value} {decision.value} by {approver}"
        )
        self._emit(run, "approval.recorded", tier, f"{decision.value} by {approver}")

        if decision == ApprovalDecision.REJECT:
            await record_transition(
                run,
                PipelineState.REJECTED,
                f"rejected at {tier.value} by {approver}",
                self.chain,
                self.events,
            )
        elif self.is_ready_for_execution(run):
            await record_transition(
                run, PipelineState.READY, "all tiers approved", self.chain, self.events
            )

        return record

    async def emergency_override(
        self,
        run: PipelineRun,
        authority: str,
        reason: str,
        signature: str,
    ) -> Attestation:
        """
        Bypass a tier rejection under delegated mission-owner authority.

        The rejected tier is replaced by an override approval and a
        distinguished `emergency_override` attestation records the authority
        and the original rejection.

        Raises:
            ChangeNotOpen: If the change is not rejected
            UnauthorizedApprover: If the authority lacks the mission-owner role
            InvalidSignature: If the signature is malformed
        """
        if run.state != PipelineState.REJECTED:
            raise ChangeNotOpen(
                f"Change {run.change_id} is {run.state.value}; only rejected changes "
                f"can be overridden",
                change_id=run.change_id,
            )
        self.require_entitlement(authority, ApprovalTier.MISSION_OWNER)
        validate_signature_format(signature)

        rejected = next(
            r for r in reversed(run.approvals) if r.decision == ApprovalDecision.REJECT
        )
        attestation = await self.chain.append(
            run.change_id,
            SubjectType.EMERGENCY_OVERRIDE,
            rejected.tier.value,
            {
                "kind": "rejection_override",
                "authority": authority,
                "signature": signature,
                "reason": reason,
                "original_record_id": rejected.record_id,
                "original_attestation_id": rejected.attestation_id,
                "original_approver": rejected.approver,
                "original_reason": run.state_reason,
            },
        )
        run.approvals.append(
            ApprovalRecord(
                change_id=run.change_id,
                tier=rejected.tier,
                approver=authority,
                decision=ApprovalDecision.APPROVE,
                risk_note=reason,
                signature=signature,
                timestamp=self.clock(),
                attestation_id=attestation.attestation_id,
                override=True,
            )
        )
        logger.warning(
            f"Emergency override by {authority} of {rejected.tier.value} rejection "
            f"for change {run.change_id}: {reason}"
        )
        self._emit(run, "approval.overridden", rejected.tier, reason)

        if self.is_ready_for_execution(run):
            next_state, note = PipelineState.READY, "all tiers approved after override"
        else:
            next_state, note = PipelineState.AWAITING_APPROVAL, "reopened by emergency override"
        await record_transition(run, next_state, note, self.chain, self.events)
        return attestation

    def _emit(self, run: PipelineRun, event_type: str, tier: ApprovalTier, detail: str) -> None:
        if self.events is not None:
            self.events.emit(
                PipelineEvent(
                    event_type=event_type,
                    change_id=run.change_id,
                    state=run.state,
                    tier=tier,
                    detail=detail,
                )
            )
