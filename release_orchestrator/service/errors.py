"""
Error taxonomy for the Release Orchestrator.

Every blocking condition surfaced to operators is a PipelineError subclass.
Each carries a stable code, the CLI exit code and the HTTP status used by the
service, plus structured details (stage, tier, breaches, chain status).
"""

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base exception for orchestrator errors."""

    code = "pipeline_error"
    exit_code = 1
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ChangeNotFound(PipelineError):
    """Raised when no pipeline run exists for a change ID."""

    code = "change_not_found"
    exit_code = 2
    http_status = 404


class ChangeNotOpen(PipelineError):
    """Raised when a change no longer accepts the requested operation."""

    code = "change_not_open"
    exit_code = 3
    http_status = 409


class ConcurrentModification(PipelineError):
    """Raised when another process changed a run since this process last read it."""

    code = "concurrent_modification"
    exit_code = 4
    http_status = 409


class OutOfOrderApproval(PipelineError):
    """Raised when a tier is approved before every lower tier."""

    code = "out_of_order_approval"
    exit_code = 10
    http_status = 409


class UnauthorizedApprover(PipelineError):
    """Raised when an approver lacks the role for a tier."""

    code = "unauthorized_approver"
    exit_code = 11
    http_status = 403


class DuplicateApproval(PipelineError):
    """Raised when a tier already holds a terminal decision."""

    code = "duplicate_approval"
    exit_code = 12
    http_status = 409


class InvalidSignature(PipelineError):
    """Raised when an approver signature is malformed."""

    code = "invalid_signature"
    exit_code = 13
    http_status = 400


class GateNotSatisfied(PipelineError):
    """Raised when execution is requested before all tiers approve."""

    code = "gate_not_satisfied"
    exit_code = 20
    http_status = 412


class StageExecutionFailure(PipelineError):
    """Raised when an external tool fails after the retry budget is spent."""

    code = "stage_execution_failure"
    exit_code = 21
    http_status = 502


class PolicyViolation(PipelineError):
    """Raised when a stage result breaches its thresholds."""

    code = "policy_violation"
    exit_code = 22
    http_status = 422

    def __init__(self, message: str, breaches: Optional[List[str]] = None, **details: Any) -> None:
        super().__init__(message, breaches=breaches or [], **details)
        self.breaches = breaches or []


class ChainVerificationFailure(PipelineError):
    """Raised when an attestation chain fails verification."""

    code = "chain_verification_failure"
    exit_code = 30
    http_status = 500

    def __init__(
        self, message: str, broken_at_index: Optional[int] = None, **details: Any
    ) -> None:
        super().__init__(message, broken_at_index=broken_at_index, **details)
        self.broken_at_index = broken_at_index


class TimeoutExpired(PipelineError):
    """Raised when an approval wait or a stage exceeds its configured limit."""

    code = "timeout_expired"
    exit_code = 40
    http_status = 408


class DefinitionValidationError(PipelineError):
    """Raised when a pipeline definition is invalid."""

    code = "definition_invalid"
    exit_code = 50
    http_status = 400


class ToolInvocationError(PipelineError):
    """Transient error from an external tool adapter; retried per stage policy."""

    code = "tool_invocation_error"
    exit_code = 21
    http_status = 502


class IncompleteApproval(PipelineError):
    """Raised when a decision lacks a field its type requires."""

    code = "incomplete_approval"
    exit_code = 14
    http_status = 400
