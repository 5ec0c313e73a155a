"""
Stage Scheduler.

Module: release_orchestrator/service/scheduler.py

Executes a pipeline definition's stage graph for one change:
- stages start once every predecessor has passed
- ready parallel stages run concurrently as asyncio tasks
- a non-parallel stage runs alone
- tool errors, timeouts and executors reporting `success=false` are retried
  with bounded exponential backoff; once exhausted the stage fails without a
  policy decision
- policy failures are never retried
- after any failure nothing new starts; in-flight siblings finish and are
  recorded (fail-fast)
- an abort signal is honoured at checkpoints before and after each tool call
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import anyio

from .adapters import AdapterRegistry
from .attestations import AttestationChain
from .definition import StageGraph
from .errors import PipelineError, StageExecutionFailure, TimeoutExpired, ToolInvocationError
from .events import EventBus
from .models import (
    PipelineDefinition,
    PipelineEvent,
    PipelineRun,
    PipelineState,
    PolicyDecision,
    StageDefinition,
    StageInvocation,
    StageResult,
    StageRun,
    StageStatus,
    SubjectType,
)
from .policy import evaluate

logger = logging.getLogger(__name__)


@dataclass
class ScheduleOutcome:
    """Where a scheduling pass left the pipeline."""

    state: PipelineState
    reason: Optional[str] = None
    failed: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    aborted: List[str] = field(default_factory=list)


class StageScheduler:
    """
    Runs stage graphs against changes.

    Responsibilities:
    - Dependency-ordered dispatch with parallel groups
    - Tool invocation through typed adapters
    - Policy evaluation of every result
    - StageRun bookkeeping and attestation in completion order
    - Retries, timeouts and cooperative cancellation
    """

    def __init__(
        self,
        chain: AttestationChain,
        adapters: AdapterRegistry,
        events: Optional[EventBus] = None,
        default_stage_timeout: float = 1800.0,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            chain: Attestation chain receiving stage results
            adapters: Tool adapters by name
            events: Optional event feed
            default_stage_timeout: Timeout for stages that declare none
            retry_base_delay: First retry delay in seconds
            retry_max_delay: Cap on a single retry delay
            sleep: Backoff sleep (injectable for tests)
        """
        self.chain = chain
        self.adapters = adapters
        self.events = events
        self.default_stage_timeout = default_stage_timeout
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.retry_base_delay * (2.0 ** (attempt - 1)), self.retry_max_delay)

    async def run(
        self,
        run: PipelineRun,
        definition: PipelineDefinition,
        cancel: asyncio.Event,
    ) -> ScheduleOutcome:
        """
        Execute every stage not yet passed for a change.

        Args:
            run: Pipeline run (stage runs are appended to it)
            definition: Pipeline definition
            cancel: Abort signal for this run

        Returns:
            Outcome naming the next pipeline state
        """
        graph = StageGraph(definition.stages)
        latest = run.latest_stage_runs()
        succeeded: Set[str] = {
            name for name, stage_run in latest.items() if stage_run.status.is_success
        }
        pending: List[str] = [name for name in graph.order if name not in succeeded]
        outcome = ScheduleOutcome(state=PipelineState.DEPLOYED)
        in_flight: Dict["asyncio.Task[StageRun]", StageDefinition] = {}
        exclusive = False

        logger.info(
            f"Scheduling {len(pending)} stage(s) for change {run.change_id}: "
            f"{', '.join(pending) or '-'}"
        )

        while True:
            if not cancel.is_set() and not outcome.failed and not exclusive:
                for name in list(pending):
                    stage = graph.stages[name]
                    if not all(dep in succeeded for dep in stage.depends_on):
                        continue
                    if not stage.parallel and in_flight:
                        # Runs alone: wait for the current group to drain.
                        break
                    pending.remove(name)
                    task = asyncio.create_task(self._execute_stage(run, stage, cancel))
                    in_flight[task] = stage
                    if not stage.parallel:
                        exclusive = True
                        break

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                stage = in_flight.pop(task)
                if not stage.parallel:
                    exclusive = False
                stage_run = task.result()
                if stage_run.status.is_success:
                    succeeded.add(stage.name)
                elif stage_run.status == StageStatus.ABORTED:
                    outcome.aborted.append(stage.name)
                else:
                    outcome.failed.append(stage.name)

        if cancel.is_set():
            outcome.state = PipelineState.ABORTED
            outcome.reason = "aborted" + (
                f"; interrupted: {', '.join(outcome.aborted)}" if outcome.aborted else ""
            )
            return outcome

        if outcome.failed:
            for name in pending:
                upstream = [f for f in outcome.failed if name in graph.downstream(f)]
                reason = (
                    f"upstream stage(s) failed: {', '.join(upstream)}"
                    if upstream
                    else f"halted after failure of: {', '.join(outcome.failed)}"
                )
                self._record_blocked(run, name, reason)
                outcome.blocked.append(name)
            outcome.state = PipelineState.BLOCKED
            outcome.reason = self._failure_summary(run, outcome)
            return outcome

        outcome.reason = "all stages passed"
        return outcome

    def _failure_summary(self, run: PipelineRun, outcome: ScheduleOutcome) -> str:
        parts = []
        for name in outcome.failed:
            stage_run = run.latest_stage_run(name)
            detail = stage_run.error if stage_run and stage_run.error else "failed"
            parts.append(f"stage '{name}' failed: {detail}")
        if outcome.blocked:
            parts.append(f"not run: {', '.join(outcome.blocked)}")
        return "; ".join(parts)

    def _record_blocked(self, run: PipelineRun, name: str, reason: str) -> None:
        now = datetime.utcnow()
        run.stage_runs.append(
            StageRun(
                change_id=run.change_id,
                stage=name,
                status=StageStatus.BLOCKED,
                finished_at=now,
                error=reason,
            )
        )
        self._emit(run, "stage.blocked", name, StageStatus.BLOCKED, reason)

    async def _execute_stage(
        self, run: PipelineRun, stage: StageDefinition, cancel: asyncio.Event
    ) -> StageRun:
        stage_run = StageRun(
            change_id=run.change_id,
            stage=stage.name,
            status=StageStatus.RUNNING,
            started_at=datetime.utcnow(),
        )
        run.stage_runs.append(stage_run)
        self._emit(run, "stage.started", stage.name, StageStatus.RUNNING)
        logger.info(f"Stage '{stage.name}' started for change {run.change_id}")

        timeout = stage.timeout_seconds or self.default_stage_timeout
        result: Optional[StageResult] = None

        while result is None:
            stage_run = self._update(run, stage_run, attempts=stage_run.attempts + 1)
            if cancel.is_set():
                return await self._abort_stage(run, stage_run, "before tool invocation")

            reported: Optional[StageResult] = None
            error: PipelineError
            try:
                adapter = self.adapters.get(stage.tool)
                reported = await asyncio.wait_for(
                    adapter.invoke(
                        StageInvocation(
                            change_id=run.change_id,
                            revision=run.change.revision,
                            stage=stage.name,
                            kind=stage.kind,
                            attempt=stage_run.attempts,
                            target=dict(stage.target),
                        )
                    ),
                    timeout=timeout,
                )
                if stage.thresholds.require_success and not reported.success:
                    raise ToolInvocationError(
                        f"Tool '{stage.tool}' reported failure"
                        + (f": {reported.detail}" if reported.detail else ""),
                        stage=stage.name,
                    )
                result = reported
                break
            except asyncio.TimeoutError:
                error = TimeoutExpired(
                    f"Stage '{stage.name}' exceeded {timeout}s", stage=stage.name
                )
            except ToolInvocationError as e:
                error = e
            except Exception as e:
                error = ToolInvocationError(
                    f"Tool '{stage.tool}' raised {type(e).__name__}: {e}", stage=stage.name
                )

            if cancel.is_set():
                return await self._abort_stage(run, stage_run, "after tool invocation")

            if stage.retryable and stage_run.attempts <= stage.max_retries:
                delay = self.backoff_delay(stage_run.attempts)
                logger.warning(
                    f"Stage '{stage.name}' attempt {stage_run.attempts} failed: "
                    f"{error.message}. Retrying in {delay:.1f}s..."
                )
                self._emit(run, "stage.retrying", stage.name, StageStatus.RUNNING, error.message)
                await self.sleep(delay)
                continue

            failure = StageExecutionFailure(
                f"{error.message} (after {stage_run.attempts} attempt(s))",
                stage=stage.name,
                attempts=stage_run.attempts,
            )
            logger.error(f"Stage '{stage.name}' failed for change {run.change_id}: {failure}")
            # No policy decision: tool failures are re-run, never risk-accepted.
            return await self._finish_stage(
                run, stage_run, StageStatus.FAILED, result=reported, error=failure.message
            )

        if cancel.is_set():
            return await self._abort_stage(run, stage_run, "after tool invocation")

        decision = evaluate(stage.thresholds, result)
        status = StageStatus.PASSED if decision.passed else StageStatus.FAILED
        if not decision.passed:
            logger.warning(
                f"Stage '{stage.name}' violated policy for change {run.change_id}: "
                f"{decision.block_reason}"
            )
        return await self._finish_stage(
            run, stage_run, status, result=result, decision=decision,
            error=decision.block_reason,
        )

    def _update(self, run: PipelineRun, stage_run: StageRun, **changes: Any) -> StageRun:
        updated = stage_run.model_copy(update=changes)
        run.replace_stage_run(updated)
        return updated

    async def _finish_stage(
        self,
        run: PipelineRun,
        stage_run: StageRun,
        status: StageStatus,
        result: Optional[StageResult] = None,
        decision: Optional[PolicyDecision] = None,
        error: Optional[str] = None,
    ) -> StageRun:
        attestation = await self.chain.append(
            run.change_id,
            SubjectType.STAGE_RESULT,
            stage_run.stage,
            {
                "run_id": stage_run.run_id,
                "status": status.value,
                "attempts": stage_run.attempts,
                "result": result.model_dump(mode="json") if result else None,
                "outcome": decision.outcome.value if decision else None,
                "breaches": list(decision.breaches) if decision else [],
                "error": error,
            },
        )
        stage_run = self._update(
            run,
            stage_run,
            status=status,
            finished_at=datetime.utcnow(),
            result=result,
            decision=decision,
            error=error,
            attestation_id=attestation.attestation_id,
        )
        self._emit(run, "stage.finished", stage_run.stage, status, error)
        logger.info(
            f"Stage '{stage_run.stage}' {status.value} for change {run.change_id}"
        )
        return stage_run

    async def _abort_stage(self, run: PipelineRun, stage_run: StageRun, checkpoint: str) -> StageRun:
        attestation = await self.chain.append(
            run.change_id,
            SubjectType.STAGE_ABORTED,
            stage_run.stage,
            {
                "run_id": stage_run.run_id,
                "status": StageStatus.ABORTED.value,
                "attempts": stage_run.attempts,
                "checkpoint": checkpoint,
            },
        )
        stage_run = self._update(
            run,
            stage_run,
            status=StageStatus.ABORTED,
            finished_at=datetime.utcnow(),
            error=f"aborted {checkpoint}",
            attestation_id=attestation.attestation_id,
        )
        self._emit(run, "stage.aborted", stage_run.stage, StageStatus.ABORTED, checkpoint)
        logger.warning(
            f"Stage '{stage_run.stage}' aborted {checkpoint} for change {run.change_id}"
        )
        return stage_run

    def _emit(
        self,
        run: PipelineRun,
        event_type: str,
        stage: str,
        status: StageStatus,
        detail: Optional[str] = None,
    ) -> None:
        if self.events is not None:
            self.events.emit(
                PipelineEvent(
                    event_type=event_type,
                    change_id=run.change_id,
                    state=run.state,
                    stage=stage,
                    stage_status=status,
                    detail=detail,
                )
            )
