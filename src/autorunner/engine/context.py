"""
Execution context - per-loop variables, cancellation and execution frames.

A RunContext is built once per loop index and owns that loop index's
browser page and VariableContext. ExecutionFrame values are immutable and
carry the action linkage (action_id / parent_action_id) into each dispatch.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional, TYPE_CHECKING

import structlog

from ..core.config import AutomationConfig
from ..core.errors import RunCancelledError
from .events import EventPipeline, EventType, RunEvent

if TYPE_CHECKING:
    from .registry import ActionRegistry
    from .variables import VariableResolver

logger = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class VariableContext:
    """Named values available to the template resolver for one loop index."""
    loop_index: int
    run_id: str
    timestamp: str = field(default_factory=lambda: datetime.now().strftime(TIMESTAMP_FORMAT))
    local_loop_index: int = 0
    user_id: str = ""
    project_id: str = ""
    automation_id: str = ""
    static_vars: dict[str, str] = field(default_factory=dict)
    runtime_vars: dict[str, Any] = field(default_factory=dict)

    # Shared by every loop index of one run
    global_vars: dict[str, Any] = field(default_factory=dict)

    def set_runtime(self, name: str, value: Any, scope: str = "local") -> None:
        if scope == "global":
            self.global_vars[name] = value
        else:
            self.runtime_vars[name] = value


class CancellationToken:
    """Cooperative cancellation flag checked at step/action/iteration boundaries."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self.timed_out = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "execution cancelled", timed_out: bool = False) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self.timed_out = timed_out
        self._event.set()
        logger.info("run_cancel_requested", reason=reason, timed_out=timed_out)

    def check(self, message: Optional[str] = None) -> None:
        """Raise RunCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise RunCancelledError(message or self.reason or "execution cancelled",
                                    timed_out=self.timed_out)


@dataclass
class RunContext:
    """Everything an action may touch while one loop index executes."""
    run_id: str
    config: AutomationConfig
    variables: VariableContext
    events: EventPipeline
    registry: "ActionRegistry"
    resolver: "VariableResolver"
    cancel_token: CancellationToken
    page: Any = None
    storage: Any = None

    @property
    def loop_index(self) -> int:
        return self.variables.loop_index

    @property
    def logger(self):
        return logger.bind(run_id=self.run_id, loop_index=self.loop_index)


@dataclass(frozen=True)
class ExecutionFrame:
    """Where in the action tree an execution is happening."""
    run: RunContext
    step_id: str = ""
    step_name: str = ""
    action_id: str = ""
    action_name: str = ""
    parent_action_id: str = ""
    action_type: str = ""

    def child(self, action_id: str, action_type: str, action_name: str = "") -> "ExecutionFrame":
        """Frame for a nested action invoked by this frame's action."""
        return replace(
            self,
            parent_action_id=self.action_id,
            action_id=action_id,
            action_name=action_name,
            action_type=action_type,
        )

    @property
    def variables(self) -> VariableContext:
        return self.run.variables

    def _event(self, event_type: EventType, **kwargs) -> RunEvent:
        return RunEvent(
            type=event_type,
            step_id=self.step_id,
            step_name=self.step_name,
            action_id=self.action_id,
            action_name=self.action_name,
            parent_action_id=self.parent_action_id,
            action_type=self.action_type,
            loop_index=self.variables.loop_index,
            local_loop_index=self.variables.local_loop_index,
            **kwargs,
        )

    def emit_log(self, message: str, duration_ms: int = 0,
                 data: Optional[dict[str, Any]] = None) -> bool:
        return self.run.events.emit(
            self._event(EventType.LOG, message=message, duration_ms=duration_ms, data=data)
        )

    def emit_error(self, error: str, duration_ms: int = 0,
                   data: Optional[dict[str, Any]] = None) -> bool:
        return self.run.events.emit(
            self._event(EventType.ERROR, error=error, duration_ms=duration_ms, data=data)
        )

    def emit_output_file(self, url: str, duration_ms: int = 0) -> bool:
        return self.run.events.emit(
            self._event(EventType.OUTPUT_FILE, output_file=url, duration_ms=duration_ms)
        )
