"""
Pipeline event feed for notification and dashboard sinks.

Module: release_orchestrator/service/events.py

StageRun and ApprovalRecord state transitions are published as PipelineEvents.
Emitting never blocks: events are queued and a background dispatcher delivers
them to sinks. Sink failures are logged and never reach the pipeline.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Deque, List, Optional, Protocol

import httpx

from .attestations import AttestationChain
from .models import PipelineEvent, PipelineRun, PipelineState, SubjectType

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Receiver of the read-only pipeline event feed."""

    async def deliver(self, event: PipelineEvent) -> None: ...


class LoggingSink:
    """Writes events to the application log."""

    async def deliver(self, event: PipelineEvent) -> None:
        logger.info(
            f"[event] {event.event_type} change={event.change_id} "
            f"state={event.state.value if event.state else '-'} "
            f"stage={event.stage or '-'} tier={event.tier.value if event.tier else '-'}"
            + (f" detail={event.detail}" if event.detail else "")
        )


class MemorySink:
    """Keeps delivered events in memory (dashboards in tests and local runs)."""

    def __init__(self) -> None:
        self.events: List[PipelineEvent] = []

    async def deliver(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[PipelineEvent]:
        return [e for e in self.events if e.event_type == event_type]


class WebhookSink:
    """POSTs events to a dashboard/notification webhook."""

    def __init__(
        self, url: str, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self.url = url
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)

    async def deliver(self, event: PipelineEvent) -> None:
        try:
            response = await self.http_client.post(
                self.url, json=event.model_dump(mode="json")
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery of event {event.event_id} failed: {e}")

    async def close(self) -> None:
        await self.http_client.aclose()


class EventBus:
    """
    Non-blocking fan-out of pipeline events.

    Events queue up in a bounded buffer (oldest dropped when full). `start()`
    launches a dispatcher task; `flush()` delivers whatever is queued.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None, max_queue: int = 1000) -> None:
        self.sinks: List[EventSink] = list(sinks or [])
        self._queue: Deque[PipelineEvent] = deque()
        self._max_queue = max_queue
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task[None]] = None

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: PipelineEvent) -> None:
        """Queue an event for delivery; never blocks."""
        if len(self._queue) >= self._max_queue:
            dropped = self._queue.popleft()
            logger.warning(
                f"Event queue full, dropping {dropped.event_type} for change {dropped.change_id}"
            )
        self._queue.append(event)
        if self._wakeup is not None:
            self._wakeup.set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def flush(self) -> None:
        """Deliver all queued events to every sink."""
        while self._queue:
            event = self._queue.popleft()
            for sink in self.sinks:
                try:
                    await sink.deliver(event)
                except Exception as e:
                    logger.error(f"Event sink {type(sink).__name__} failed: {e}")

    async def start(self) -> None:
        """Start the background dispatcher."""
        self._wakeup = asyncio.Event()
        self._dispatcher = asyncio.create_task(self._dispatch())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the dispatcher after delivering queued events and close the sinks."""
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        self._wakeup = None
        await self.flush()
        for sink in self.sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()
        logger.info("Event bus stopped")

    async def _dispatch(self) -> None:
        assert self._wakeup is not None
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.flush()


async def record_transition(
    run: PipelineRun,
    state: PipelineState,
    reason: Optional[str],
    chain: AttestationChain,
    events: Optional[EventBus] = None,
) -> None:
    """
    Move a pipeline run to a new state.

    The transition is attested on the change's chain and published to the
    event feed.
    """
    previous = run.state
    run.state = state
    run.state_reason = reason
    run.updated_at = datetime.utcnow()

    await chain.append(
        run.change_id,
        SubjectType.PIPELINE_STATE,
        state.value,
        {"from": previous.value, "to": state.value, "reason": reason},
    )
    logger.info(
        f"Pipeline for change {run.change_id}: {previous.value} -> {state.value}"
        + (f" ({reason})" if reason else "")
    )
    if events is not None:
        events.emit(
            PipelineEvent(
                event_type="pipeline.state_changed",
                change_id=run.change_id,
                state=state,
                detail=reason,
            )
        )
