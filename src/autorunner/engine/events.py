"""
Event pipeline - bounded run event queue and background progress aggregator.

Delivery is best-effort: producers never block, and an event that does not
fit in the queue is dropped and counted.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

import structlog

from ..core.models import AutomationRun

logger = structlog.get_logger()

DEFAULT_BUFFER_SIZE = 1000
DEFAULT_FLUSH_INTERVAL = 5.0


class EventType(Enum):
    """Run event types."""
    LOG = "log"
    ERROR = "error"
    OUTPUT_FILE = "output_file"
    STEP = "step"


@dataclass(frozen=True)
class RunEvent:
    """A unit of execution telemetry."""
    type: EventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    step_id: str = ""
    step_name: str = ""
    action_id: str = ""
    action_name: str = ""
    parent_action_id: str = ""
    action_type: str = ""
    message: str = ""
    error: str = ""
    output_file: str = ""
    duration_ms: int = 0
    loop_index: int = 0
    local_loop_index: int = 0
    data: Optional[dict[str, Any]] = None

    def to_log_entry(self) -> dict[str, Any]:
        """Convert to the persisted log entry shape."""
        entry: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "loop_index": self.loop_index,
            "local_loop_index": self.local_loop_index,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "action_id": self.action_id,
            "action_name": self.action_name,
            "parent_action_id": self.parent_action_id,
            "action_type": self.action_type,
            "duration_ms": self.duration_ms,
        }
        if self.type == EventType.ERROR:
            entry["error"] = self.error
            entry["status"] = "failed"
        elif self.type == EventType.OUTPUT_FILE:
            entry["output_file"] = self.output_file
            entry["message"] = self.message or f"Output file: {self.output_file}"
            entry["status"] = "success"
        else:
            entry["message"] = self.message
            entry["status"] = "success"
        if self.data:
            entry["data"] = self.data
        return entry


class RunProgressStore(Protocol):
    """Where aggregated progress is written."""

    async def update_run_progress(
        self, run_id: str, logs: list[dict[str, Any]], output_files: list[str]
    ) -> None: ...


_CLOSE = object()


class EventPipeline:
    """Bounded queue shared by every loop index of one automation run."""

    def __init__(self, maxsize: int = DEFAULT_BUFFER_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def emit(self, event: RunEvent) -> bool:
        """Enqueue without blocking. Returns False if the event was dropped."""
        if self._closed:
            self.dropped += 1
            logger.warning("event_after_close", event_type=event.type.value,
                           action_id=event.action_id)
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("event_dropped", event_type=event.type.value,
                           action_id=event.action_id, dropped=self.dropped)
            return False
        return True

    def seal(self) -> None:
        """Stop accepting events. Later emits are dropped and counted."""
        self._closed = True

    async def close(self) -> None:
        """Stop accepting events and signal the consumer once the backlog drains."""
        if self._closed:
            return
        self.seal()
        await self._queue.put(_CLOSE)

    async def get(self) -> Any:
        return await self._queue.get()

    def drain(self) -> list[RunEvent]:
        """Take every queued event without waiting."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is not _CLOSE:
                events.append(item)


class ProgressAggregator:
    """
    Drains an EventPipeline into ordered log/output-file lists.

    Snapshots are written to the run record and the progress store on a
    fixed interval, when the pipeline closes, and on cancellation.
    """

    def __init__(
        self,
        pipeline: EventPipeline,
        run: AutomationRun,
        store: Optional[RunProgressStore] = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
    ):
        self.pipeline = pipeline
        self.run = run
        self.store = store
        self.flush_interval = flush_interval

        self._logs: list[dict[str, Any]] = list(run.logs)
        self._output_files: list[str] = list(run.output_files)
        self._lock = asyncio.Lock()
        self._consumer: Optional[asyncio.Task] = None
        self._ticker: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._consumer = asyncio.create_task(self._consume())
        self._ticker = asyncio.create_task(self._tick())

    async def _consume(self) -> None:
        try:
            while True:
                item = await self.pipeline.get()
                if item is _CLOSE:
                    break
                await self._apply(item)
        finally:
            for event in self.pipeline.drain():
                await self._apply(event)
            await self.flush()

    async def _apply(self, event: RunEvent) -> None:
        if event.type == EventType.STEP:
            return
        async with self._lock:
            if event.type == EventType.OUTPUT_FILE and event.output_file:
                self._output_files.append(event.output_file)
            self._logs.append(event.to_log_entry())

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()

    async def flush(self) -> None:
        """Write the current snapshot into the run record and the store."""
        async with self._lock:
            logs = list(self._logs)
            output_files = list(self._output_files)

        self.run.logs = logs
        self.run.output_files = output_files
        self.run.dropped_events = self.pipeline.dropped

        if self.store is None:
            return
        try:
            await self.store.update_run_progress(self.run.id, logs, output_files)
        except Exception as e:
            logger.error("run_progress_flush_failed", run_id=self.run.id, error=str(e))

    async def wait_closed(self) -> None:
        """Wait for the consumer to drain after pipeline.close(), then stop the ticker."""
        if self._consumer and not self._consumer.done():
            await self._consumer
        await self._stop_ticker()
        logger.debug("progress_aggregator_drained", run_id=self.run.id,
                     logs=len(self._logs), output_files=len(self._output_files),
                     dropped=self.pipeline.dropped)

    async def cancel(self) -> None:
        """Stop without waiting for close; events already queued are still recorded."""
        self.pipeline.seal()
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        await self._stop_ticker()

    async def _stop_ticker(self) -> None:
        if self._ticker and not self._ticker.done():
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
