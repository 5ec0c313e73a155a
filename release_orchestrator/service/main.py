"""
Release Orchestrator Service - Main FastAPI Application.

Provides API endpoints for:
- Submitting changes for release
- Recording tier approvals and emergency overrides
- Running, aborting and inspecting pipelines
- Risk acceptance of policy failures
- Attestation chain verification and audit views
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import config
from .errors import PipelineError
from .models import (
    AbortRequest,
    ApprovalRecord,
    ApprovalSubmitRequest,
    Attestation,
    ChainVerification,
    ChangeSubmitRequest,
    EmergencyOverrideRequest,
    ErrorResponse,
    HealthCheckResponse,
    PipelineRun,
    PipelineState,
    PipelineStatusResponse,
    RiskAcceptanceRequest,
    StageRun,
)
from .orchestrator import PipelineOrchestrator

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Track service start time for uptime
SERVICE_START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application.

    Handles startup and shutdown tasks.
    """
    # Startup
    logger.info("Starting Release Orchestrator service...")
    if getattr(app.state, "orchestrator", None) is None:
        logger.info(f"Pipeline definition: {config.definition_path}")
        logger.info(f"State snapshot: {config.state_path or 'in-memory'}")
        app.state.orchestrator = PipelineOrchestrator.from_config(config)

    await app.state.orchestrator.start()
    logger.info("Release Orchestrator service started successfully")
    yield

    # Shutdown
    logger.info("Shutting down Release Orchestrator service...")
    await app.state.orchestrator.stop()
    logger.info("Release Orchestrator service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Release Orchestrator Service",
    description="Approval-gated release pipelines with a tamper-evident attestation chain",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not initialized",
        )
    return orchestrator


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map orchestrator errors to their HTTP status with structured details."""
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=ErrorResponse(
            error=exc.code,
            message=exc.message,
            details=exc.details or None,
        ).model_dump(),
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = [f"{err['loc']}: {err['msg']}" for err in exc.errors()]
    logger.warning(f"Validation error: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="ValidationError",
            message="Invalid request data",
            details={"errors": errors},
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error="HTTPException",
            message=exc.detail or "An error occurred",
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="InternalServerError",
            message="An internal server error occurred",
            details={"exception": str(exc)},
        ).model_dump(),
    )


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/", response_model=Dict[str, str])
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "Release Orchestrator",
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request) -> HealthCheckResponse:
    """
    Health check endpoint.

    Reports `degraded` when any change's attestation chain fails verification.
    """
    orchestrator = get_orchestrator(request)
    runs = orchestrator.list_runs()
    broken = [
        run.change_id for run in runs if not orchestrator.chain.verify_chain(run.change_id).valid
    ]
    if broken:
        logger.error(f"Attestation chain verification failing for: {', '.join(broken)}")

    return HealthCheckResponse(
        status="degraded" if broken else "healthy",
        version=SERVICE_VERSION,
        pipelines=len(runs),
        uptime_seconds=time.time() - SERVICE_START_TIME,
    )


@app.post("/changes", response_model=PipelineRun, status_code=status.HTTP_201_CREATED)
async def submit_change(request: Request, body: ChangeSubmitRequest) -> PipelineRun:
    """Submit a change; its pipeline waits for approvals."""
    return await get_orchestrator(request).submit_change(
        revision=body.revision,
        submitted_by=body.submitted_by,
        change_id=body.change_id,
        description=body.description,
    )


@app.get("/changes", response_model=List[PipelineRun])
async def list_changes(request: Request, state: Optional[PipelineState] = None) -> List[PipelineRun]:
    """List pipeline runs, optionally filtered by state."""
    return get_orchestrator(request).list_runs(state)


@app.get("/changes/{change_id}", response_model=PipelineStatusResponse)
async def get_status(request: Request, change_id: str) -> PipelineStatusResponse:
    """Status, blocking conditions and chain verification for one change."""
    return get_orchestrator(request).status(change_id)


@app.post(
    "/changes/{change_id}/approvals",
    response_model=ApprovalRecord,
    status_code=status.HTTP_201_CREATED,
)
async def submit_approval(
    request: Request, change_id: str, body: ApprovalSubmitRequest
) -> ApprovalRecord:
    """
    Record a tier decision.

    Raises:
        OutOfOrderApproval: A lower tier has not approved yet (409)
        UnauthorizedApprover: Approver lacks the tier role (403)
        DuplicateApproval: Tier already decided (409)
        InvalidSignature: Malformed signature (400)
    """
    return await get_orchestrator(request).submit_approval(
        change_id,
        tier=body.tier,
        decision=body.decision,
        approver=body.approver,
        signature=body.signature,
        risk_note=body.risk_note,
    )


@app.get("/changes/{change_id}/ready", response_model=Dict[str, Any])
async def readiness(request: Request, change_id: str) -> Dict[str, Any]:
    """Whether every tier has approved the change."""
    orchestrator = get_orchestrator(request)
    return {
        "change_id": change_id,
        "ready": orchestrator.is_ready_for_execution(change_id),
    }


@app.post("/changes/{change_id}/run", response_model=PipelineStatusResponse)
async def run_pipeline(request: Request, change_id: str) -> PipelineStatusResponse:
    """
    Run the stage graph for an approved change.

    Returns the resulting status; a blocked pipeline is reported in the body,
    not as an error. Refusals (gate not satisfied, unresolved policy
    violations, broken chain) are errors.
    """
    orchestrator = get_orchestrator(request)
    await orchestrator.run_pipeline(change_id)
    return orchestrator.status(change_id)


@app.post("/changes/{change_id}/abort", response_model=PipelineStatusResponse)
async def abort_pipeline(
    request: Request, change_id: str, body: AbortRequest
) -> PipelineStatusResponse:
    """Abort a pipeline; running stages stop at their next checkpoint."""
    orchestrator = get_orchestrator(request)
    await orchestrator.abort(change_id, body.requested_by, body.reason)
    return orchestrator.status(change_id)


@app.post(
    "/changes/{change_id}/stages/{stage}/risk-acceptance",
    response_model=StageRun,
    status_code=status.HTTP_201_CREATED,
)
async def accept_risk(
    request: Request, change_id: str, stage: str, body: RiskAcceptanceRequest
) -> StageRun:
    """Mission-owner risk acceptance for a policy-failed stage."""
    return await get_orchestrator(request).accept_risk(
        change_id, stage, approver=body.approver, note=body.note, signature=body.signature
    )


@app.post(
    "/changes/{change_id}/emergency-override",
    response_model=Attestation,
    status_code=status.HTTP_201_CREATED,
)
async def emergency_override(
    request: Request, change_id: str, body: EmergencyOverrideRequest
) -> Attestation:
    """Delegated authority bypasses a tier rejection; recorded on the chain."""
    return await get_orchestrator(request).emergency_override(
        change_id, authority=body.authority, reason=body.reason, signature=body.signature
    )


@app.get("/changes/{change_id}/attestations", response_model=List[Attestation])
async def list_attestations(request: Request, change_id: str) -> List[Attestation]:
    """The change's attestation chain, genesis first."""
    orchestrator = get_orchestrator(request)
    orchestrator.get_run(change_id)
    return orchestrator.chain.entries(change_id)


@app.get("/changes/{change_id}/verify", response_model=ChainVerification)
async def verify_chain(request: Request, change_id: str) -> ChainVerification:
    """Recompute the change's chain; reports the first broken link."""
    return get_orchestrator(request).verify_chain(change_id)


@app.get("/audit/summary", response_model=List[Dict[str, Any]])
async def audit_summary(request: Request) -> List[Dict[str, Any]]:
    """Cross-change audit projection built from the attestation chains."""
    return get_orchestrator(request).audit_summary()


def main() -> None:
    """Main entry point for running the service."""
    import uvicorn

    logger.info("Starting Release Orchestrator service with uvicorn...")

    uvicorn.run(
        "release_orchestrator.service.main:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
