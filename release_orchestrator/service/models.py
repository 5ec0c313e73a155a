"""
Pydantic models for the Release Orchestrator service.

Defines the pipeline data model (changes, approvals, stages, attestations,
pipeline runs), the normalized shapes exchanged with external tools, and the
API request/response contracts.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ============================================================================
# Enums
# ============================================================================


class ApprovalTier(str, Enum):
    """Review tiers, in the order they must approve."""

    PEER = "peer"
    SECURITY_GATEKEEPER = "security_gatekeeper"
    MISSION_OWNER = "mission_owner"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)

    def lower_tiers(self) -> List["ApprovalTier"]:
        return TIER_ORDER[: self.rank]


TIER_ORDER: List[ApprovalTier] = [
    ApprovalTier.PEER,
    ApprovalTier.SECURITY_GATEKEEPER,
    ApprovalTier.MISSION_OWNER,
]


class ApprovalDecision(str, Enum):
    """Decision recorded by an approver."""

    APPROVE = "approve"
    REJECT = "reject"
    CONDITIONALLY_APPROVE = "conditionally_approve"

    @property
    def is_approval(self) -> bool:
        return self in (ApprovalDecision.APPROVE, ApprovalDecision.CONDITIONALLY_APPROVE)


class PipelineState(str, Enum):
    """Lifecycle state of a pipeline run."""

    AWAITING_APPROVAL = "awaiting_approval"
    READY = "ready"
    RUNNING = "running"
    BLOCKED = "blocked"
    DEPLOYED = "deployed"
    REJECTED = "rejected"
    ABORTED = "aborted"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = {
    PipelineState.DEPLOYED,
    PipelineState.REJECTED,
    PipelineState.ABORTED,
    PipelineState.EXPIRED,
}


class StageStatus(str, Enum):
    """Status of a single stage run."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    BLOCKED = "blocked"
    PASSED_WITH_EXCEPTION = "passed_with_exception"
    ABORTED = "aborted"

    @property
    def is_success(self) -> bool:
        return self in (StageStatus.PASSED, StageStatus.PASSED_WITH_EXCEPTION)


class StageKind(str, Enum):
    """Category of external tool a stage invokes."""

    SCAN = "scan"
    BUILD = "build"
    DEPLOY = "deploy"
    COMPLIANCE = "compliance"


class SubjectType(str, Enum):
    """Subtypes of attestation."""

    CHANGE_SUBMITTED = "change_submitted"
    APPROVAL = "approval"
    STAGE_RESULT = "stage_result"
    STAGE_ABORTED = "stage_aborted"
    PIPELINE_STATE = "pipeline_state"
    EMERGENCY_OVERRIDE = "emergency_override"
    REJECTED_REQUEST = "rejected_request"


class PolicyOutcome(str, Enum):
    """Outcome of policy evaluation."""

    PASS = "pass"
    FAIL = "fail"
    PASS_WITH_EXCEPTION = "pass_with_exception"


SEVERITIES = ("critical", "high", "medium", "low", "info")


# ============================================================================
# Change & Approval Models
# ============================================================================


class Change(BaseModel):
    """One unit of code proposed for release."""

    change_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    revision: str = Field(..., min_length=1, description="Source revision reference")
    submitted_by: str = Field(..., min_length=1)
    submitted_at: datetime = Field(default_factory=datetime.utcnow)
    description: Optional[str] = Field(default=None)


class ApprovalRecord(BaseModel):
    """One approval decision at one tier for a change."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    change_id: str
    tier: ApprovalTier
    approver: str = Field(..., min_length=1)
    decision: ApprovalDecision
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    risk_note: Optional[str] = Field(default=None)
    signature: str
    attestation_id: Optional[str] = Field(default=None)
    override: bool = Field(
        default=False, description="Recorded through the emergency override path"
    )


# ============================================================================
# Policy Models
# ============================================================================


class FindingCounts(BaseModel):
    """Normalized finding counts by severity."""

    critical: int = Field(default=0, ge=0)
    high: int = Field(default=0, ge=0)
    medium: int = Field(default=0, ge=0)
    low: int = Field(default=0, ge=0)
    info: int = Field(default=0, ge=0)


class PolicyThresholds(BaseModel):
    """Pass/fail limits applied to a stage result."""

    model_config = ConfigDict(frozen=True)

    max_critical: Optional[int] = Field(default=None, ge=0)
    max_high: Optional[int] = Field(default=None, ge=0)
    max_medium: Optional[int] = Field(default=None, ge=0)
    max_low: Optional[int] = Field(default=None, ge=0)
    max_info: Optional[int] = Field(default=None, ge=0)
    require_success: bool = Field(default=True)
    require_compliant: bool = Field(default=False)

    def limit_for(self, severity: str) -> Optional[int]:
        return getattr(self, f"max_{severity}")


class RiskAcceptance(BaseModel):
    """Mission-owner exception for one failed stage of one change."""

    model_config = ConfigDict(frozen=True)

    change_id: str
    stage: str
    approver: str
    note: str = Field(..., min_length=1)
    accepted_at: datetime = Field(default_factory=datetime.utcnow)
    original_reason: str
    original_attestation_id: Optional[str] = None


class PolicyDecision(BaseModel):
    """Result of evaluating a stage result against its thresholds."""

    model_config = ConfigDict(frozen=True)

    outcome: PolicyOutcome
    breaches: List[str] = Field(default_factory=list)
    block_reason: Optional[str] = None
    exception: Optional[RiskAcceptance] = None

    @property
    def passed(self) -> bool:
        return self.outcome != PolicyOutcome.FAIL


# ============================================================================
# Stage Models
# ============================================================================


class StageDefinition(BaseModel):
    """Static configuration of one pipeline step."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    kind: StageKind
    tool: str = Field(..., min_length=1, description="Name of the tool adapter to invoke")
    depends_on: List[str] = Field(default_factory=list)
    parallel: bool = Field(
        default=True, description="Whether the stage may run concurrently with siblings"
    )
    thresholds: PolicyThresholds = Field(default_factory=PolicyThresholds)
    retryable: bool = Field(default=True)
    max_retries: int = Field(default=2, ge=0, le=10)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    target: Dict[str, Any] = Field(
        default_factory=dict, description="Scan target / build or deploy request details"
    )


class StageResult(BaseModel):
    """Normalized output of an external tool invocation."""

    findings: Optional[FindingCounts] = None
    success: bool = True
    compliant: Optional[bool] = None
    reference: Optional[str] = Field(
        default=None, description="Results location, artifact or environment reference"
    )
    detail: Optional[str] = None


class StageInvocation(BaseModel):
    """Request sent to a tool adapter."""

    change_id: str
    revision: str
    stage: str
    kind: StageKind
    attempt: int = Field(default=1, ge=1)
    target: Dict[str, Any] = Field(default_factory=dict)


class StageRun(BaseModel):
    """
    One execution of a stage definition for a change.

    Immutable: progress is recorded by replacing the run in
    `PipelineRun.stage_runs` with an updated copy.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    change_id: str
    stage: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[StageResult] = None
    decision: Optional[PolicyDecision] = None
    error: Optional[str] = None
    attestation_id: Optional[str] = None
    supersedes: Optional[str] = Field(
        default=None, description="Run ID replaced by a risk-acceptance reclassification"
    )


# ============================================================================
# Attestation Models
# ============================================================================


class Attestation(BaseModel):
    """Immutable signed link in a change's audit chain."""

    model_config = ConfigDict(frozen=True)

    attestation_id: str = Field(default_factory=lambda: str(uuid4()))
    change_id: str
    sequence: int = Field(..., ge=0)
    subject_type: SubjectType
    subject: str = Field(..., description="Stage name, tier or state the record is about")
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    previous_hash: str
    hash: str
    signature: str
    signer_key_id: str


class ChainVerification(BaseModel):
    """Outcome of verifying a change's attestation chain."""

    change_id: str
    valid: bool
    length: int
    broken_at_index: Optional[int] = None
    reason: Optional[str] = None


# ============================================================================
# Pipeline Run Aggregate
# ============================================================================


class PipelineRun(BaseModel):
    """Aggregate root binding a change to its approvals and stage runs."""

    change: Change
    state: PipelineState = PipelineState.AWAITING_APPROVAL
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    stage_runs: List[StageRun] = Field(default_factory=list)
    approval_deadline: Optional[datetime] = None
    state_reason: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def change_id(self) -> str:
        return self.change.change_id

    def approval_for(self, tier: ApprovalTier) -> Optional[ApprovalRecord]:
        """Latest record for a tier."""
        for record in reversed(self.approvals):
            if record.tier == tier:
                return record
        return None

    def approved_tiers(self) -> List[ApprovalTier]:
        tiers: List[ApprovalTier] = []
        for tier in TIER_ORDER:
            record = self.approval_for(tier)
            if record is not None and record.decision.is_approval:
                tiers.append(tier)
        return tiers

    def latest_stage_run(self, stage: str) -> Optional[StageRun]:
        for stage_run in reversed(self.stage_runs):
            if stage_run.stage == stage:
                return stage_run
        return None

    def latest_stage_runs(self) -> Dict[str, StageRun]:
        latest: Dict[str, StageRun] = {}
        for stage_run in self.stage_runs:
            latest[stage_run.stage] = stage_run
        return latest

    def replace_stage_run(self, stage_run: StageRun) -> None:
        """Swap in an updated copy of a stage run (matched by run_id)."""
        for index, existing in enumerate(self.stage_runs):
            if existing.run_id == stage_run.run_id:
                self.stage_runs[index] = stage_run
                return
        self.stage_runs.append(stage_run)


# ============================================================================
# Pipeline Definition
# ============================================================================


class ToolConfig(BaseModel):
    """How to reach one external tool."""

    kind: str = Field(default="http", description="Adapter kind (http, fixed)")
    url: Optional[str] = None
    result: Optional[StageResult] = None
    timeout_seconds: float = Field(default=300.0, gt=0)
    headers: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_kind(self) -> "ToolConfig":
        """Each adapter kind needs its own settings."""
        if self.kind == "http" and not self.url:
            raise ValueError("http tools require a url")
        if self.kind == "fixed" and self.result is None:
            raise ValueError("fixed tools require a result")
        if self.kind not in ("http", "fixed"):
            raise ValueError(f"Unknown tool kind: {self.kind}")
        return self


class PipelineDefinition(BaseModel):
    """Complete pipeline definition: stages, approver entitlements, tools."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., description="Definition version (semver)")
    description: Optional[str] = None
    stages: List[StageDefinition] = Field(..., min_length=1)
    approvers: Dict[str, List[ApprovalTier]] = Field(
        default_factory=dict, description="Approver identity -> tiers they may sign"
    )
    tools: Dict[str, ToolConfig] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version follows semver pattern."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must follow semver format (x.y.z)")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version parts must be numeric")
        return v

    def stage(self, name: str) -> Optional[StageDefinition]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


# ============================================================================
# Events
# ============================================================================


class PipelineEvent(BaseModel):
    """Read-only state transition published to notification sinks."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    change_id: str
    state: Optional[PipelineState] = None
    stage: Optional[str] = None
    stage_status: Optional[StageStatus] = None
    tier: Optional[ApprovalTier] = None
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# API Request/Response Models
# ============================================================================


class ChangeSubmitRequest(BaseModel):
    """Request to submit a change for release."""

    revision: str = Field(..., min_length=1)
    submitted_by: str = Field(..., min_length=1)
    change_id: Optional[str] = Field(default=None, description="Caller-chosen ID")
    description: Optional[str] = None


class ApprovalSubmitRequest(BaseModel):
    """Request to record an approval decision."""

    tier: ApprovalTier
    decision: ApprovalDecision
    approver: str = Field(..., min_length=1)
    signature: str
    risk_note: Optional[str] = None


class RiskAcceptanceRequest(BaseModel):
    """Mission-owner risk acceptance for a failed stage."""

    approver: str = Field(..., min_length=1)
    signature: str
    note: str = Field(..., min_length=1)


class EmergencyOverrideRequest(BaseModel):
    """Delegated authority bypassing a tier rejection."""

    authority: str = Field(..., min_length=1)
    signature: str
    reason: str = Field(..., min_length=1)


class AbortRequest(BaseModel):
    """Request to abort a pipeline run."""

    requested_by: str = Field(..., min_length=1)
    reason: str = Field(default="aborted by operator")


class PipelineStatusResponse(BaseModel):
    """Status report for one pipeline run."""

    change: Change
    state: PipelineState
    state_reason: Optional[str] = None
    approvals: List[ApprovalRecord] = Field(default_factory=list)
    pending_tiers: List[ApprovalTier] = Field(default_factory=list)
    stages: Dict[str, StageRun] = Field(default_factory=dict)
    blocking: List[str] = Field(
        default_factory=list, description="Failed stages/tiers with breached thresholds"
    )
    chain: ChainVerification


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status (healthy, degraded, unhealthy)")
    version: str = Field(..., description="Service version")
    pipelines: int = Field(..., ge=0, description="Tracked pipeline runs")
    uptime_seconds: float = Field(..., ge=0.0, description="Service uptime")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional details")
