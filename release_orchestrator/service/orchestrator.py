"""
Pipeline Orchestrator.

Module: release_orchestrator/service/orchestrator.py

Owns every PipelineRun aggregate and wires the Approval Gate Engine, the
Stage Scheduler, the Policy Evaluator and the Attestation Chain together:

    submit change -> tier approvals -> run stages -> attest -> deployed/blocked

Each change is its own aggregate guarded by its own lock; cross-change views
are read-only projections of the attestation chains.

With a state store attached, several orchestrators (the service and any
`releasectl` process) may share one snapshot. A change is re-read from the
store before every operation and written back only if nobody else moved its
chain meanwhile; a running change is leased to the process running it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

import anyio

from .adapters import AdapterRegistry
from .approvals import ApprovalGateEngine, IdentitySource, StaticIdentitySource, validate_signature_format
from .attestations import AttestationChain, KeyManager
from .config import OrchestratorConfig
from .definition import load_definition_from_file, validate_definition
from .errors import (
    ChainVerificationFailure,
    ChangeNotFound,
    ChangeNotOpen,
    ConcurrentModification,
    GateNotSatisfied,
    PipelineError,
    PolicyViolation,
    StageExecutionFailure,
    TimeoutExpired,
)
from .events import EventBus, LoggingSink, WebhookSink, record_transition
from .models import (
    ApprovalDecision,
    ApprovalRecord,
    ApprovalTier,
    Attestation,
    Change,
    ChainVerification,
    PipelineDefinition,
    PipelineEvent,
    PipelineRun,
    PipelineState,
    PipelineStatusResponse,
    PolicyOutcome,
    RiskAcceptance,
    StageRun,
    StageStatus,
    SubjectType,
)
from .policy import apply_risk_acceptance
from .scheduler import StageScheduler
from .store import JsonStateStore, chain_head

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """
    Approval-gated release pipeline orchestrator.

    Features:
    - Change submission and lifecycle tracking
    - Three-tier approval gate with emergency override
    - Stage graph execution with fail-fast, retries and abort
    - Risk acceptance of policy failures
    - Tamper-evident attestation chain per change, including refused requests
    - Approval wait expiry (background sweep)
    - Optional JSON snapshot persistence shared between processes
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        adapters: Optional[AdapterRegistry] = None,
        identity_source: Optional[IdentitySource] = None,
        chain: Optional[AttestationChain] = None,
        events: Optional[EventBus] = None,
        store: Optional[JsonStateStore] = None,
        approval_timeout_seconds: float = 86400,
        expiry_sweep_interval: float = 60.0,
        default_stage_timeout: float = 1800.0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        store_poll_interval: float = 1.0,
        lease_ttl: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            definition: Validated pipeline definition
            adapters: Tool adapters (built from the definition if omitted)
            identity_source: Approver entitlements (definition approvers if omitted)
            chain: Attestation chain (new chain with default keys if omitted)
            events: Event feed for notification sinks
            store: Snapshot store; state is memory-only without one
            approval_timeout_seconds: Approval wait limit (0 disables)
            expiry_sweep_interval: Seconds between background expiry sweeps
            default_stage_timeout: Timeout for stages that declare none
            retry_base_delay: First retry backoff delay
            retry_max_delay: Cap on a retry delay
            store_poll_interval: Seconds between store re-reads while waiting or running
            lease_ttl: Heartbeat age after which a running change's owner is presumed gone
            sleep: Backoff sleep (injectable for tests)
            clock: Time source
        """
        validate_definition(definition)
        self.definition = definition
        self.adapters = adapters or AdapterRegistry.from_definition(definition)
        self.chain = chain or AttestationChain()
        self.events = events or EventBus()
        self.store = store
        self.clock = clock
        self.expiry_sweep_interval = expiry_sweep_interval
        self.store_poll_interval = store_poll_interval
        self.lease_ttl = lease_ttl
        self.instance_id = uuid4().hex

        self.gate = ApprovalGateEngine(
            self.chain,
            identity_source or StaticIdentitySource(definition.approvers),
            events=self.events,
            approval_timeout_seconds=approval_timeout_seconds,
            clock=clock,
        )
        self.scheduler = StageScheduler(
            self.chain,
            self.adapters,
            events=self.events,
            default_stage_timeout=default_stage_timeout,
            retry_base_delay=retry_base_delay,
            retry_max_delay=retry_max_delay,
            sleep=sleep,
        )

        self._runs: Dict[str, PipelineRun] = {}
        self._synced_heads: Dict[str, Optional[str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancels: Dict[str, asyncio.Event] = {}
        self._abort_reasons: Dict[str, str] = {}
        self._state_signals: Dict[str, asyncio.Event] = {}
        self._sweeper: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_config(
        cls,
        cfg: OrchestratorConfig,
        definition: Optional[PipelineDefinition] = None,
        **overrides: Any,
    ) -> "PipelineOrchestrator":
        """Build an orchestrator from service configuration and load saved state."""
        definition = definition or load_definition_from_file(cfg.definition_path)

        sinks: List[Any] = [LoggingSink()]
        if cfg.event_webhook_url:
            sinks.append(WebhookSink(cfg.event_webhook_url))

        orchestrator = cls(
            definition,
            chain=AttestationChain(
                KeyManager(cfg.signing_key_id, cfg.signing_secret, cfg.key_dir)
            ),
            events=EventBus(sinks, max_queue=cfg.event_queue_size),
            store=JsonStateStore(cfg.state_path) if cfg.state_path else None,
            approval_timeout_seconds=cfg.approval_timeout_seconds,
            expiry_sweep_interval=cfg.expiry_sweep_interval_seconds,
            default_stage_timeout=cfg.default_stage_timeout_seconds,
            retry_base_delay=cfg.retry_base_delay_seconds,
            retry_max_delay=cfg.retry_max_delay_seconds,
            store_poll_interval=cfg.state_poll_interval_seconds,
            lease_ttl=cfg.lease_ttl_seconds,
            **overrides,
        )
        orchestrator.load_state()
        return orchestrator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the event dispatcher and the approval expiry sweep."""
        await self.events.start()
        self._sweeper = asyncio.create_task(self._sweep_expired())
        logger.info("Pipeline orchestrator started")

    async def stop(self) -> None:
        """Stop background tasks, deliver queued events and release adapters."""
        if self._sweeper:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.events.stop()
        await self.adapters.close()
        logger.info("Pipeline orchestrator stopped")

    async def _sweep_expired(self) -> None:
        """Background task expiring runs whose approval wait ran out."""
        while True:
            try:
                await asyncio.sleep(self.expiry_sweep_interval)
                await self.expire_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in approval expiry sweep: {str(e)}")

    async def _watch_store(self, change_id: str, cancel: asyncio.Event) -> None:
        """Renew the run lease and pick up abort requests filed by other processes."""
        assert self.store is not None
        while True:
            try:
                await asyncio.sleep(self.store_poll_interval)
                self.store.renew_lease(change_id, self.instance_id)
                if cancel.is_set():
                    continue
                request = self.store.pending_abort(change_id)
                if request is not None:
                    self._abort_reasons[change_id] = request["reason"]
                    cancel.set()
                    logger.warning(
                        f"Abort of change {change_id} requested from another process by "
                        f"{request['requested_by']}"
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error watching state store for change {change_id}: {str(e)}")

    # ------------------------------------------------------------------
    # State synchronization
    # ------------------------------------------------------------------

    def load_state(self) -> None:
        """Restore runs and chains from the attached store."""
        if self.store is None or not self.store.exists():
            return
        runs, chains = self.store.load()
        self._runs = {run.change_id: run for run in runs}
        self.chain.restore(chains)
        self._synced_heads = {run.change_id: chain_head(chains.get(run.change_id)) for run in runs}
        logger.info(f"Restored {len(runs)} pipeline run(s) from {self.store.path}")

    def _head(self, change_id: str) -> Optional[str]:
        head = self.chain.head(change_id)
        return head.hash if head else None

    def _adopt(
        self, change_id: str, run: PipelineRun, entries: List[Dict[str, Any]]
    ) -> PipelineRun:
        """Replace the in-memory copy of a change with the stored one."""
        self._runs[change_id] = run
        self.chain.restore_change(change_id, entries)
        self._synced_heads[change_id] = chain_head(entries)
        self._signal(change_id)
        return run

    def _refresh(self, change_id: str, holding_lock: bool = False) -> Optional[PipelineRun]:
        """
        The current run for a change, re-read from the store if another
        process wrote it since this one last did.

        Changes running here, or locked by an operation in progress here, are
        served from memory.
        """
        if self.store is None or change_id in self._cancels:
            return self._runs.get(change_id)
        lock = self._locks.get(change_id)
        if not holding_lock and lock is not None and lock.locked():
            return self._runs.get(change_id)

        stored, entries = self.store.load_change(change_id)
        if stored is None:
            return self._runs.get(change_id)
        if change_id in self._runs and chain_head(entries) == self._synced_heads.get(change_id):
            return self._runs[change_id]
        logger.info(f"Change {change_id} was updated by another process; reloading")
        return self._adopt(change_id, stored, entries)

    def _refresh_all(self) -> None:
        if self.store is None or not self.store.exists():
            return
        runs, chains = self.store.load()
        for stored in runs:
            change_id = stored.change_id
            lock = self._locks.get(change_id)
            if change_id in self._cancels or (lock is not None and lock.locked()):
                continue
            entries = chains.get(change_id, [])
            if change_id not in self._runs or chain_head(entries) != self._synced_heads.get(change_id):
                self._adopt(change_id, stored, entries)

    def _current(self, change_id: str) -> PipelineRun:
        """Run for an operation holding the change's lock."""
        run = self._refresh(change_id, holding_lock=True)
        if run is None:
            raise ChangeNotFound(f"Change {change_id} not found", change_id=change_id)
        return run

    def _persist(self, change_id: str) -> None:
        """
        Write one change back to the store.

        Raises:
            ConcurrentModification: If another process wrote the change first;
                the stored copy replaces the in-memory one
        """
        if self.store is None:
            return
        try:
            self.store.save(
                [self._runs[change_id]],
                self.chain.snapshot([change_id]),
                expected_heads={change_id: self._synced_heads.get(change_id)},
            )
        except ConcurrentModification:
            stored, entries = self.store.load_change(change_id)
            if stored is not None:
                self._adopt(change_id, stored, entries)
            logger.error(f"Discarded local update of change {change_id}: modified by another process")
            raise
        self._synced_heads[change_id] = self._head(change_id)

    def _running_elsewhere(self, run: PipelineRun) -> bool:
        """True if another live process holds the run lease for this change."""
        if self.store is None or run.state != PipelineState.RUNNING or run.change_id in self._cancels:
            return False
        holder = self.store.lease_holder(run.change_id, self.lease_ttl)
        return holder is not None and holder != self.instance_id

    def _lock_for(self, change_id: str) -> asyncio.Lock:
        lock = self._locks.get(change_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[change_id] = lock
        return lock

    def _signal(self, change_id: str) -> None:
        """Wake anything waiting on a state change of this run."""
        signal = self._state_signals.pop(change_id, None)
        if signal is not None:
            signal.set()

    async def _transition(self, run: PipelineRun, state: PipelineState, reason: Optional[str]) -> None:
        await record_transition(run, state, reason, self.chain, self.events)
        self._signal(run.change_id)

    async def _refuse(
        self,
        run: PipelineRun,
        operation: str,
        error: PipelineError,
        requested_by: Optional[str] = None,
    ) -> None:
        """
        Record a refused request on the change's chain and persist it.

        A broken chain is never extended, and a chain leased to another
        process is left to that process; both refusals go to the log and the
        event feed only.
        """
        detail = f"{operation} refused ({error.code}): {error.message}"
        self.events.emit(
            PipelineEvent(
                event_type="request.refused",
                change_id=run.change_id,
                state=run.state,
                detail=detail,
            )
        )

        if self._running_elsewhere(run):
            logger.warning(f"Change {run.change_id}: {detail} (not attested, running elsewhere)")
            return
        if not self.chain.verify_chain(run.change_id).valid:
            logger.warning(f"Change {run.change_id}: {detail} (not attested, chain broken)")
        else:
            await self.chain.append(
                run.change_id,
                SubjectType.REJECTED_REQUEST,
                operation,
                {
                    "error": error.code,
                    "message": error.message,
                    "requested_by": requested_by,
                    "details": error.details,
                },
            )
            logger.warning(f"Change {run.change_id}: {detail}")

        try:
            self._persist(run.change_id)
        except ConcurrentModification:
            logger.warning(f"Refusal on change {run.change_id} not saved: modified by another process")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, change_id: str) -> PipelineRun:
        run = self._refresh(change_id)
        if run is None:
            raise ChangeNotFound(f"Change {change_id} not found", change_id=change_id)
        return run

    def list_runs(self, state: Optional[PipelineState] = None) -> List[PipelineRun]:
        self._refresh_all()
        runs = sorted(self._runs.values(), key=lambda r: r.change.submitted_at)
        if state is not None:
            runs = [r for r in runs if r.state == state]
        return runs

    def is_ready_for_execution(self, change_id: str) -> bool:
        return self.gate.is_ready_for_execution(self.get_run(change_id))

    def verify_chain(self, change_id: str) -> ChainVerification:
        self.get_run(change_id)
        return self.chain.verify_chain(change_id)

    def audit_summary(self) -> List[Dict[str, Any]]:
        """Cross-change audit view, derived only from the attestation chains."""
        self._refresh_all()
        return self.chain.projection()

    def abort_requested(self, change_id: str) -> Optional[str]:
        """Reason of an abort requested but not yet carried out."""
        if change_id in self._abort_reasons:
            return self._abort_reasons[change_id]
        if self.store is not None:
            request = self.store.pending_abort(change_id)
            if request is not None:
                return request["reason"]
        return None

    def blocking_conditions(self, run: PipelineRun) -> List[str]:
        """Human-readable list of what currently blocks a run."""
        conditions: List[str] = []
        if run.state == PipelineState.REJECTED:
            for record in run.approvals:
                if record.decision == ApprovalDecision.REJECT:
                    conditions.append(f"tier '{record.tier.value}' rejected by {record.approver}")
        if run.state in (PipelineState.AWAITING_APPROVAL, PipelineState.EXPIRED):
            for tier in self.gate.pending_tiers(run):
                conditions.append(f"tier '{tier.value}' awaiting approval")
        if run.state == PipelineState.EXPIRED and run.state_reason:
            conditions.append(run.state_reason)
        if run.state == PipelineState.RUNNING:
            abort_reason = self.abort_requested(run.change_id)
            if abort_reason:
                conditions.append(f"abort requested: {abort_reason}")

        for name, stage_run in run.latest_stage_runs().items():
            if stage_run.status == StageStatus.FAILED:
                conditions.append(f"stage '{name}' failed: {stage_run.error}")
            elif stage_run.status == StageStatus.BLOCKED:
                conditions.append(f"stage '{name}' blocked: {stage_run.error}")
        return conditions

    def status(self, change_id: str) -> PipelineStatusResponse:
        """Status report including blocking conditions and chain verification."""
        run = self.get_run(change_id)
        return PipelineStatusResponse(
            change=run.change,
            state=run.state,
            state_reason=run.state_reason,
            approvals=list(run.approvals),
            pending_tiers=self.gate.pending_tiers(run),
            stages=run.latest_stage_runs(),
            blocking=self.blocking_conditions(run),
            chain=self.chain.verify_chain(change_id),
        )

    def blocking_error(self, change_id: str) -> Optional[PipelineError]:
        """
        The error describing why a run cannot proceed, if any.

        Used by surfaces that must fail on blocking conditions (CLI exit codes).
        """
        run = self.get_run(change_id)
        verification = self.chain.verify_chain(change_id)
        details: Dict[str, Any] = {
            "change_id": change_id,
            "chain_valid": verification.valid,
            "blocking": self.blocking_conditions(run),
        }

        if not verification.valid:
            return ChainVerificationFailure(
                f"Attestation chain for change {change_id} broken at index "
                f"{verification.broken_at_index}: {verification.reason}",
                broken_at_index=verification.broken_at_index,
                **details,
            )
        if run.state == PipelineState.REJECTED:
            return ChangeNotOpen(f"Change {change_id} was rejected", **details)
        if run.state == PipelineState.EXPIRED:
            return TimeoutExpired(f"Approval wait for change {change_id} expired", **details)
        if run.state == PipelineState.BLOCKED:
            breaches: List[str] = []
            failed: List[str] = []
            for name, stage_run in run.latest_stage_runs().items():
                if stage_run.status != StageStatus.FAILED:
                    continue
                failed.append(name)
                if stage_run.decision is not None:
                    breaches.extend(f"{name}: {b}" for b in stage_run.decision.breaches)
            if breaches:
                return PolicyViolation(
                    f"Change {change_id} blocked by policy violation(s) in: {', '.join(failed)}",
                    breaches=breaches,
                    stages=failed,
                    **details,
                )
            return StageExecutionFailure(
                f"Change {change_id} blocked by stage failure(s): {', '.join(failed)}",
                stages=failed,
                **details,
            )
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit_change(
        self,
        revision: str,
        submitted_by: str,
        change_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> PipelineRun:
        """
        Submit a change; its run starts suspended awaiting approvals.

        Raises:
            ChangeNotOpen: If the change ID is already in use
        """
        change_kwargs: Dict[str, Any] = {
            "revision": revision,
            "submitted_by": submitted_by,
            "submitted_at": self.clock(),
            "description": description,
        }
        if change_id:
            change_kwargs["change_id"] = change_id
        change = Change(**change_kwargs)

        async with self._lock_for(change.change_id):
            existing = self._refresh(change.change_id, holding_lock=True)
            if existing is not None:
                error = ChangeNotOpen(
                    f"Change {change.change_id} already exists", change_id=change.change_id
                )
                await self._refuse(existing, "submit", error, submitted_by)
                raise error

            run = PipelineRun(
                change=change,
                approval_deadline=self.gate.deadline_for(change.submitted_at),
                updated_at=change.submitted_at,
            )
            self._runs[change.change_id] = run
            await self.chain.append(
                change.change_id,
                SubjectType.CHANGE_SUBMITTED,
                change.revision,
                {
                    "revision": change.revision,
                    "submitted_by": submitted_by,
                    "description": description,
                    "definition": f"{self.definition.name}@{self.definition.version}",
                },
            )
            self.events.emit(
                PipelineEvent(
                    event_type="change.submitted",
                    change_id=change.change_id,
                    state=run.state,
                    detail=revision,
                )
            )
            self._persist(change.change_id)

        logger.info(
            f"Change {change.change_id} submitted by {submitted_by} at revision {revision}"
        )
        return run

    async def submit_approval(
        self,
        change_id: str,
        tier: ApprovalTier,
        decision: ApprovalDecision,
        approver: str,
        signature: str,
        risk_note: Optional[str] = None,
    ) -> ApprovalRecord:
        """Record a tier decision (see ApprovalGateEngine.submit_approval)."""
        async with self._lock_for(change_id):
            run = self._current(change_id)
            previous_state = run.state
            try:
                record = await self.gate.submit_approval(
                    run, tier, decision, approver, signature, risk_note
                )
            except PipelineError as e:
                await self._refuse(run, f"approval:{tier.value}", e, approver)
                raise
            finally:
                if run.state != previous_state:
                    self._signal(change_id)
            self._persist(change_id)
        return record

    async def emergency_override(
        self, change_id: str, authority: str, reason: str, signature: str
    ) -> Attestation:
        """Bypass a tier rejection (see ApprovalGateEngine.emergency_override)."""
        async with self._lock_for(change_id):
            run = self._current(change_id)
            try:
                attestation = await self.gate.emergency_override(run, authority, reason, signature)
            except PipelineError as e:
                await self._refuse(run, "emergency_override", e, authority)
                raise
            self._signal(change_id)
            self._persist(change_id)
        return attestation

    async def expire_stale(self, now: Optional[datetime] = None) -> List[str]:
        """
        Expire every run whose approval wait has run out.

        Returns:
            IDs of the runs that expired
        """
        self._refresh_all()
        expired: List[str] = []
        for change_id in list(self._runs):
            if not self.gate.is_expired(self._runs[change_id], now):
                continue
            async with self._lock_for(change_id):
                run = self._current(change_id)
                if self.gate.is_expired(run, now):
                    await self.gate.expire(run)
                    self._signal(change_id)
                    self._persist(change_id)
                    expired.append(change_id)
        if expired:
            logger.info(f"Expired {len(expired)} pipeline run(s) awaiting approval")
        return expired

    async def wait_until_ready(self, change_id: str) -> PipelineRun:
        """
        Suspend until the run leaves the approval wait.

        Returns when the run is ready, rejected or aborted; the run is moved to
        `expired` if its approval deadline passes first. With a store attached
        the wait also re-reads the store, so approvals recorded by other
        processes end it.
        """
        run = self.get_run(change_id)
        while run.state == PipelineState.AWAITING_APPROVAL:
            signal = self._state_signals.setdefault(change_id, asyncio.Event())
            remaining: Optional[float] = None
            if run.approval_deadline is not None:
                remaining = (run.approval_deadline - self.clock()).total_seconds()
                if remaining <= 0:
                    async with self._lock_for(change_id):
                        run = self._current(change_id)
                        if self.gate.is_expired(run):
                            await self.gate.expire(run)
                            self._signal(change_id)
                            self._persist(change_id)
                    continue

            timeout = remaining
            if self.store is not None:
                timeout = (
                    self.store_poll_interval
                    if remaining is None
                    else min(remaining, self.store_poll_interval)
                )
            try:
                await asyncio.wait_for(signal.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            run = self.get_run(change_id)
        return run

    async def execute_when_ready(self, change_id: str) -> PipelineRun:
        """
        Wait at the approval boundary, then run the pipeline.

        Raises:
            TimeoutExpired: If the approval wait expired (stages never run)
        """
        run = await self.wait_until_ready(change_id)
        if run.state == PipelineState.EXPIRED:
            raise TimeoutExpired(
                f"Approval wait for change {change_id} expired before execution",
                change_id=change_id,
                blocking=self.blocking_conditions(run),
            )
        return await self.run_pipeline(change_id)

    async def _check_runnable(self, run: PipelineRun) -> None:
        change_id = run.change_id
        if self.gate.is_expired(run):
            await self.gate.expire(run)
            self._signal(change_id)
            self._persist(change_id)
        if run.state == PipelineState.EXPIRED:
            raise TimeoutExpired(
                f"Approval wait for change {change_id} expired", change_id=change_id
            )
        if run.state.is_terminal or run.state == PipelineState.RUNNING:
            raise ChangeNotOpen(
                f"Change {change_id} is {run.state.value}", change_id=change_id
            )
        if not self.gate.is_ready_for_execution(run):
            pending = [t.value for t in self.gate.pending_tiers(run)]
            raise GateNotSatisfied(
                f"Change {change_id} is not approved by all tiers "
                f"(pending: {', '.join(pending)})",
                change_id=change_id,
                pending_tiers=pending,
            )
        if run.state == PipelineState.BLOCKED:
            unresolved = self._unresolved_policy_failures(run)
            if unresolved:
                raise PolicyViolation(
                    f"Change {change_id} has unresolved policy violations in: "
                    f"{', '.join(unresolved)}; remediate or accept the risk",
                    breaches=[
                        f"{name}: {b}"
                        for name in unresolved
                        for b in run.latest_stage_run(name).decision.breaches
                    ],
                    change_id=change_id,
                    stages=unresolved,
                )

        self.chain.require_valid(change_id)

        if self.store is not None and not self.store.acquire_lease(
            change_id, self.instance_id, self.lease_ttl
        ):
            raise ChangeNotOpen(
                f"Change {change_id} is being run by another process", change_id=change_id
            )

    async def run_pipeline(self, change_id: str) -> PipelineRun:
        """
        Execute the stage graph for an approved change.

        A blocked run resumes once every failed stage has been reclassified by
        a risk acceptance (or, for tool failures, simply re-runs them).

        Returns:
            The run in its resulting state (deployed, blocked or aborted)

        Raises:
            GateNotSatisfied: If not every tier approved
            PolicyViolation: If a policy failure is still unresolved
            ChainVerificationFailure: If the change's chain does not verify
            TimeoutExpired: If the approval wait expired
            ChangeNotOpen: If the run is terminal or already running
        """
        async with self._lock_for(change_id):
            run = self._current(change_id)
            try:
                await self._check_runnable(run)
            except PipelineError as e:
                await self._refuse(run, "run", e)
                raise

            await self._transition(run, PipelineState.RUNNING, "stage execution started")
            try:
                self._persist(change_id)
            except ConcurrentModification:
                if self.store is not None:
                    self.store.release_lease(change_id, self.instance_id)
                raise
            cancel = asyncio.Event()
            self._cancels[change_id] = cancel

        watcher: Optional[asyncio.Task[None]] = None
        if self.store is not None:
            watcher = asyncio.create_task(self._watch_store(change_id, cancel))
        try:
            outcome = await self.scheduler.run(run, self.definition, cancel)
        except BaseException:
            self._cancels.pop(change_id, None)
            if self.store is not None:
                self.store.release_lease(change_id, self.instance_id)
            raise
        finally:
            if watcher is not None:
                watcher.cancel()
                try:
                    await watcher
                except asyncio.CancelledError:
                    pass

        async with self._lock_for(change_id):
            self._cancels.pop(change_id, None)
            abort_reason = self._abort_reasons.pop(change_id, None)
            try:
                if run.state.is_terminal:
                    logger.warning(
                        f"Change {change_id} became {run.state.value} while its stages ran; "
                        f"keeping that state"
                    )
                else:
                    reason = outcome.reason
                    if outcome.state == PipelineState.ABORTED:
                        reason = (abort_reason or "aborted") + (
                            f"; interrupted: {', '.join(outcome.aborted)}"
                            if outcome.aborted
                            else ""
                        )
                    elif abort_reason:
                        logger.warning(
                            f"Abort of change {change_id} arrived after its last stage finished"
                        )
                    await self._transition(run, outcome.state, reason)
                self._persist(change_id)
            finally:
                if self.store is not None:
                    self.store.release_lease(change_id, self.instance_id)

        return self._runs[change_id]

    def _unresolved_policy_failures(self, run: PipelineRun) -> List[str]:
        unresolved: List[str] = []
        for name, stage_run in run.latest_stage_runs().items():
            if (
                stage_run.status == StageStatus.FAILED
                and stage_run.decision is not None
                and stage_run.decision.outcome == PolicyOutcome.FAIL
            ):
                unresolved.append(name)
        return unresolved

    async def abort(self, change_id: str, requested_by: str, reason: str = "aborted by operator") -> PipelineRun:
        """
        Abort a run.

        Not-yet-started stages never start; in-flight stages stop at their next
        checkpoint and are attested as aborted. Completed stage runs are kept.
        A run leased to another process gets an abort request, carried out by
        that process at its next store poll.

        Raises:
            ChangeNotOpen: If the run already reached a terminal state
        """
        full_reason = f"{reason} (requested by {requested_by})"

        async with self._lock_for(change_id):
            run = self._current(change_id)
            if run.state.is_terminal:
                error = ChangeNotOpen(
                    f"Change {change_id} is already {run.state.value}", change_id=change_id
                )
                await self._refuse(run, "abort", error, requested_by)
                raise error

            cancel = self._cancels.get(change_id)
            if cancel is not None:
                self._abort_reasons[change_id] = full_reason
                cancel.set()
                logger.warning(
                    f"Abort requested for running change {change_id} by {requested_by}: {reason}"
                )
                return run

            if self._running_elsewhere(run):
                assert self.store is not None
                self.store.request_abort(change_id, requested_by, full_reason)
                self.events.emit(
                    PipelineEvent(
                        event_type="pipeline.abort_requested",
                        change_id=change_id,
                        state=run.state,
                        detail=full_reason,
                    )
                )
                logger.warning(
                    f"Abort requested for change {change_id} running in another process "
                    f"by {requested_by}: {reason}"
                )
                return run

            await self._transition(run, PipelineState.ABORTED, full_reason)
            self._persist(change_id)
            if self.store is not None:
                # Clears the lease of an owner that stopped heartbeating.
                self.store.release_lease(change_id)

        logger.warning(f"Change {change_id} aborted by {requested_by}: {reason}")
        return run

    async def accept_risk(
        self,
        change_id: str,
        stage: str,
        approver: str,
        note: str,
        signature: str,
    ) -> StageRun:
        """
        Record a mission-owner risk acceptance for a policy-failed stage.

        The failed StageRun is kept; a new StageRun reclassified as
        `passed_with_exception` supersedes it, and an `emergency_override`
        attestation references the original failure and the accepting approver.
        Tool failures (no policy decision) cannot be accepted.

        Raises:
            UnauthorizedApprover: If the approver is not a mission owner
            InvalidSignature: If the signature is malformed
            ChangeNotOpen: If there is no policy failure to accept
        """
        async with self._lock_for(change_id):
            run = self._current(change_id)
            try:
                failed_run = self._acceptable_failure(run, stage, approver, signature)
            except PipelineError as e:
                await self._refuse(run, f"risk_acceptance:{stage}", e, approver)
                raise

            acceptance = RiskAcceptance(
                change_id=change_id,
                stage=stage,
                approver=approver,
                note=note,
                accepted_at=self.clock(),
                original_reason=failed_run.decision.block_reason or "",
                original_attestation_id=failed_run.attestation_id,
            )
            decision = apply_risk_acceptance(failed_run.decision, acceptance, change_id, stage)

            attestation = await self.chain.append(
                change_id,
                SubjectType.EMERGENCY_OVERRIDE,
                stage,
                {
                    "kind": "risk_acceptance",
                    "approver": approver,
                    "signature": signature,
                    "note": note,
                    "original_run_id": failed_run.run_id,
                    "original_attestation_id": failed_run.attestation_id,
                    "original_reason": acceptance.original_reason,
                    "breaches": list(decision.breaches),
                    "outcome": decision.outcome.value,
                },
            )
            reclassified = StageRun(
                change_id=change_id,
                stage=stage,
                status=StageStatus.PASSED_WITH_EXCEPTION,
                attempts=failed_run.attempts,
                started_at=failed_run.started_at,
                finished_at=self.clock(),
                result=failed_run.result,
                decision=decision,
                attestation_id=attestation.attestation_id,
                supersedes=failed_run.run_id,
            )
            run.stage_runs.append(reclassified)
            self.events.emit(
                PipelineEvent(
                    event_type="stage.risk_accepted",
                    change_id=change_id,
                    state=run.state,
                    stage=stage,
                    stage_status=StageStatus.PASSED_WITH_EXCEPTION,
                    detail=f"accepted by {approver}: {note}",
                )
            )
            logger.warning(
                f"Risk accepted by {approver} for stage '{stage}' of change {change_id}"
            )

            remaining = [
                name
                for name, stage_run in run.latest_stage_runs().items()
                if stage_run.status == StageStatus.FAILED
            ]
            if not remaining:
                await self._transition(
                    run, PipelineState.READY, f"risk accepted for stage '{stage}' by {approver}"
                )
            self._persist(change_id)

        return reclassified

    def _acceptable_failure(
        self, run: PipelineRun, stage: str, approver: str, signature: str
    ) -> StageRun:
        """The policy-failed stage run a risk acceptance would supersede."""
        change_id = run.change_id
        self.gate.require_entitlement(approver, ApprovalTier.MISSION_OWNER)
        validate_signature_format(signature)

        if run.state != PipelineState.BLOCKED:
            raise ChangeNotOpen(
                f"Change {change_id} is {run.state.value}; risk can only be accepted "
                f"for a blocked pipeline",
                change_id=change_id,
                stage=stage,
            )
        failed_run = run.latest_stage_run(stage)
        if (
            failed_run is None
            or failed_run.status != StageStatus.FAILED
            or failed_run.decision is None
            or failed_run.decision.outcome != PolicyOutcome.FAIL
        ):
            raise ChangeNotOpen(
                f"Stage '{stage}' of change {change_id} has no policy failure to accept",
                change_id=change_id,
                stage=stage,
            )
        return failed_run
