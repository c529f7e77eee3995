"""Per-run stage tracking with batch aggregation and broadcast."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from .events import EventChannel, Subscription

logger = logging.getLogger(__name__)


class ProgressStage(str, Enum):
    QUEUED = "QUEUED"
    INITIALIZING = "INITIALIZING"
    LOADING_CONTEXT = "LOADING_CONTEXT"
    PROCESSING = "PROCESSING"
    PARSING_RESPONSE = "PARSING_RESPONSE"
    SAVING_RESULTS = "SAVING_RESULTS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset({ProgressStage.COMPLETED, ProgressStage.FAILED, ProgressStage.CANCELLED})

STAGE_ORDER = (
    ProgressStage.QUEUED,
    ProgressStage.INITIALIZING,
    ProgressStage.LOADING_CONTEXT,
    ProgressStage.PROCESSING,
    ProgressStage.PARSING_RESPONSE,
    ProgressStage.SAVING_RESULTS,
    ProgressStage.COMPLETED,
)

# Cumulative weights: initializing 5, loading 15, processing 70 (counted half
# while in flight), parsing 5, saving 5.
STAGE_PERCENTAGES: dict[ProgressStage, float] = {
    ProgressStage.QUEUED: 0.0,
    ProgressStage.INITIALIZING: 5.0,
    ProgressStage.LOADING_CONTEXT: 20.0,
    ProgressStage.PROCESSING: 55.0,
    ProgressStage.PARSING_RESPONSE: 90.0,
    ProgressStage.SAVING_RESULTS: 95.0,
    ProgressStage.COMPLETED: 100.0,
    ProgressStage.FAILED: 100.0,
    ProgressStage.CANCELLED: 100.0,
}

_HISTORY_LIMIT = 10


def _stage_rank(stage: ProgressStage) -> int:
    if stage.is_terminal:
        return len(STAGE_ORDER)
    return STAGE_ORDER.index(stage)


@dataclass(slots=True)
class ProgressEvent:
    run_id: str
    stage: ProgressStage
    percentage: float
    timestamp: datetime
    is_complete: bool
    current_operation: str | None = None
    error: str | None = None
    repository: str | None = None
    batch_id: str | None = None
    estimated_time_remaining: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "stage": self.stage.value,
            "percentage": self.percentage,
            "current_operation": self.current_operation,
            "timestamp": self.timestamp.isoformat(),
            "is_complete": self.is_complete,
            "error": self.error,
            "repository": self.repository,
            "batch_id": self.batch_id,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass(slots=True)
class BatchProgress:
    batch_id: str
    total_operations: int
    completed_operations: int
    failed_operations: int
    overall_percentage: float
    run_progress: list[ProgressEvent]
    start_time: datetime
    is_complete: bool
    estimated_time_remaining: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "total_operations": self.total_operations,
            "completed_operations": self.completed_operations,
            "failed_operations": self.failed_operations,
            "overall_percentage": self.overall_percentage,
            "run_progress": [event.to_dict() for event in self.run_progress],
            "start_time": self.start_time.isoformat(),
            "is_complete": self.is_complete,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass(slots=True)
class _RunState:
    run_id: str
    repository: str | None
    batch_id: str | None
    stage: ProgressStage = ProgressStage.QUEUED
    stage_started: datetime | None = None
    last_event: ProgressEvent | None = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class _BatchState:
    batch_id: str
    total_operations: int
    start_time: datetime
    run_ids: list[str] = field(default_factory=list)
    completed_at: datetime | None = None
    last_snapshot: BatchProgress | None = None


class ProgressTracker:
    """Stage machine per run, aggregated per batch.

    The tracker is the single writer of each run's stage: transitions that
    move backwards or leave a terminal stage are ignored, so subscribers see
    a monotonic sequence ending in exactly one terminal stage.
    """

    def __init__(
        self,
        *,
        batch_retention: timedelta = timedelta(hours=1),
        sweep_interval: float = 3600.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._batch_retention = batch_retention
        self._sweep_interval = sweep_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runs: dict[str, _RunState] = {}
        self._batches: dict[str, _BatchState] = {}
        self._stage_history: dict[str, dict[ProgressStage, deque[float]]] = {}
        self._run_channel: EventChannel[ProgressEvent] = EventChannel(
            "agent_run_progress", is_terminal=lambda event: event.is_complete
        )
        self._batch_channel: EventChannel[BatchProgress] = EventChannel(
            "batch_progress", is_terminal=lambda snapshot: snapshot.is_complete
        )
        self._sweep_task: asyncio.Task[None] | None = None

    # -- batches -----------------------------------------------------------

    def create_batch(self, total_operations: int, *, batch_id: str | None = None) -> str:
        batch_id = batch_id or uuid.uuid4().hex
        self._batches[batch_id] = _BatchState(
            batch_id=batch_id,
            total_operations=total_operations,
            start_time=self._clock(),
        )
        logger.info("Created batch", extra={"batch_id": batch_id, "total_operations": total_operations})
        if total_operations == 0:
            self._emit_batch(batch_id)
        return batch_id

    def add_run_to_batch(self, batch_id: str, run_id: str, repository: str | None = None) -> None:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise KeyError(f"Batch {batch_id} not found")
        state = self._runs.get(run_id)
        if state is None:
            state = self._runs[run_id] = _RunState(run_id=run_id, repository=repository, batch_id=batch_id)
        else:
            state.batch_id = batch_id
            state.repository = state.repository or repository
        if run_id not in batch.run_ids:
            batch.run_ids.append(run_id)
        self._emit_batch(batch_id)

    # -- runs --------------------------------------------------------------

    def update_run_progress(
        self,
        run_id: str,
        stage: ProgressStage,
        message: str | None = None,
        *,
        repository: str | None = None,
        error: str | None = None,
    ) -> ProgressEvent | None:
        """Advance ``run_id`` to ``stage`` and broadcast the resulting event."""

        now = self._clock()
        state = self._runs.get(run_id)
        if state is None:
            state = self._runs[run_id] = _RunState(run_id=run_id, repository=repository, batch_id=None)
        elif repository and not state.repository:
            state.repository = repository

        if state.last_event is not None:
            if state.stage.is_terminal:
                logger.warning(
                    "Ignoring progress update for finished run",
                    extra={"run_id": run_id, "stage": stage.value, "current": state.stage.value},
                )
                return None
            if not stage.is_terminal and _stage_rank(stage) < _stage_rank(state.stage):
                logger.warning(
                    "Ignoring out-of-order progress update",
                    extra={"run_id": run_id, "stage": stage.value, "current": state.stage.value},
                )
                return None

        if state.stage_started is not None and stage != state.stage:
            elapsed = (now - state.stage_started).total_seconds()
            self._record_stage_duration(state.repository, state.stage, elapsed)

        state.stage = stage
        state.stage_started = now
        state.updated_at = now
        event = ProgressEvent(
            run_id=run_id,
            stage=stage,
            percentage=STAGE_PERCENTAGES[stage],
            timestamp=now,
            is_complete=stage.is_terminal,
            current_operation=message,
            error=error,
            repository=state.repository,
            batch_id=state.batch_id,
            estimated_time_remaining=self._estimate_time_remaining(state),
        )
        state.last_event = event
        self._run_channel.publish(run_id, event)
        if state.batch_id is not None:
            self._emit_batch(state.batch_id)
        return event

    def mark_run_failed(self, run_id: str, error_message: str) -> ProgressEvent | None:
        return self._force_terminal(run_id, ProgressStage.FAILED, error_message)

    def mark_run_cancelled(self, run_id: str, reason: str | None = None) -> ProgressEvent | None:
        return self._force_terminal(run_id, ProgressStage.CANCELLED, reason or "Cancelled")

    def _force_terminal(self, run_id: str, stage: ProgressStage, message: str) -> ProgressEvent | None:
        state = self._runs.get(run_id)
        if state is not None and state.stage.is_terminal and state.last_event is not None:
            return None
        return self.update_run_progress(run_id, stage, message, error=message)

    def get_run_progress(self, run_id: str) -> ProgressEvent | None:
        state = self._runs.get(run_id)
        return state.last_event if state else None

    def get_batch_progress(self, batch_id: str) -> BatchProgress | None:
        if batch_id not in self._batches:
            return None
        return self._snapshot(self._batches[batch_id])

    # -- subscriptions -----------------------------------------------------

    def subscribe_run(self, run_id: str) -> Subscription[ProgressEvent]:
        return self._run_channel.subscribe(run_id, initial=self.get_run_progress(run_id))

    def subscribe_batch(self, batch_id: str) -> Subscription[BatchProgress]:
        return self._batch_channel.subscribe(batch_id, initial=self.get_batch_progress(batch_id))

    # -- aggregation -------------------------------------------------------

    def _snapshot(self, batch: _BatchState) -> BatchProgress:
        events: list[ProgressEvent] = []
        for run_id in batch.run_ids:
            state = self._runs.get(run_id)
            if state is None:
                continue
            if state.last_event is not None:
                events.append(state.last_event)
            else:
                events.append(
                    ProgressEvent(
                        run_id=run_id,
                        stage=state.stage,
                        percentage=STAGE_PERCENTAGES[state.stage],
                        timestamp=state.updated_at,
                        is_complete=False,
                        repository=state.repository,
                        batch_id=batch.batch_id,
                    )
                )

        finished = [event for event in events if event.stage.is_terminal]
        failed = [event for event in events if event.stage == ProgressStage.FAILED]
        overall = sum(event.percentage for event in events) / len(events) if events else 0.0
        remaining = sum(event.estimated_time_remaining or 0 for event in events if not event.is_complete)
        is_complete = len(events) >= batch.total_operations and len(finished) == len(events)
        return BatchProgress(
            batch_id=batch.batch_id,
            total_operations=batch.total_operations,
            completed_operations=len(finished),
            failed_operations=len(failed),
            overall_percentage=overall,
            run_progress=events,
            start_time=batch.start_time,
            is_complete=is_complete,
            estimated_time_remaining=remaining or None,
        )

    def _emit_batch(self, batch_id: str) -> None:
        batch = self._batches.get(batch_id)
        if batch is None:
            return
        snapshot = self._snapshot(batch)
        if batch.last_snapshot is not None and batch.last_snapshot.is_complete:
            return
        batch.last_snapshot = snapshot
        if snapshot.is_complete and batch.completed_at is None:
            batch.completed_at = self._clock()
            logger.info(
                "Batch complete",
                extra={
                    "batch_id": batch_id,
                    "completed": snapshot.completed_operations,
                    "failed": snapshot.failed_operations,
                },
            )
        self._batch_channel.publish(batch_id, snapshot)

    # -- estimates ---------------------------------------------------------

    def _record_stage_duration(self, repository: str | None, stage: ProgressStage, seconds: float) -> None:
        history = self._stage_history.setdefault(repository or "default", {})
        durations = history.setdefault(stage, deque(maxlen=_HISTORY_LIMIT))
        durations.append(seconds)

    def _estimate_time_remaining(self, state: _RunState) -> int | None:
        if state.stage.is_terminal:
            return 0
        history = self._stage_history.get(state.repository or "default")
        if not history:
            return None
        current_rank = _stage_rank(state.stage)
        remaining = 0.0
        for stage in STAGE_ORDER[1:-1]:
            durations = history.get(stage)
            if not durations:
                continue
            average = sum(durations) / len(durations)
            rank = _stage_rank(stage)
            if rank == current_rank:
                remaining += average / 2
            elif rank > current_rank:
                remaining += average
        return round(remaining)

    # -- retention ---------------------------------------------------------

    def sweep(self) -> int:
        """Evict batches (and their runs) complete for longer than the retention window."""

        cutoff = self._clock() - self._batch_retention
        evicted = 0
        for batch_id, batch in list(self._batches.items()):
            if batch.completed_at is None or batch.completed_at > cutoff:
                continue
            for run_id in batch.run_ids:
                self._runs.pop(run_id, None)
            self._batches.pop(batch_id, None)
            self._batch_channel.close_key(batch_id)
            evicted += 1

        for run_id, state in list(self._runs.items()):
            if state.batch_id is None and state.stage.is_terminal and state.updated_at <= cutoff:
                self._runs.pop(run_id, None)

        if evicted:
            logger.info("Evicted completed batches", extra={"count": evicted})
        return evicted

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""

        if self._sweep_task is not None and not self._sweep_task.done():
            logger.warning("Progress sweep is already running")
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._run_channel.close_all()
        self._batch_channel.close_all()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    @property
    def batch_count(self) -> int:
        return len(self._batches)


__all__ = [
    "BatchProgress",
    "ProgressEvent",
    "ProgressStage",
    "ProgressTracker",
    "STAGE_ORDER",
    "STAGE_PERCENTAGES",
    "TERMINAL_STAGES",
]
