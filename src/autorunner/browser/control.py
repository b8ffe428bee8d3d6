"""
Control-flow actions - conditional branching and bounded loops.

Both re-enter the registry through ``run_nested`` so their nested actions
are resolved and dispatched exactly like top-level ones, under a child
execution frame that records the parent action id.
"""

import asyncio
import time
from typing import Any, Literal, Optional

import structlog
from pydantic import Field, field_validator, model_validator

from ..core.errors import ActionError
from ..engine.conditions import ELEMENT_CONDITIONS, check_element_condition
from ..engine.context import ExecutionFrame
from ..engine.dispatch import run_nested
from ..engine.registry import ActionSchema
from .actions import BrowserAction

logger = structlog.get_logger()

ConditionType = Literal[
    "is_enabled", "is_disabled", "is_visible", "is_hidden", "is_checked", "is_editable"
]


class IfElseSchema(ActionSchema):
    selector: str = Field(min_length=1)
    condition_type: ConditionType
    if_actions: list[Any] = Field(default_factory=list)
    else_if_conditions: list[Any] = Field(default_factory=list)
    else_actions: list[Any] = Field(default_factory=list)
    final_actions: list[Any] = Field(default_factory=list)


class IfElseAction(BrowserAction):
    """
    Run one branch chosen by element state, then always run final_actions.

    Branch order: if_actions, the first matching else_if_conditions entry,
    else_actions. A failure in final_actions is reported only when the
    branch itself succeeded.
    """

    action_type = "playwright:if_else"
    schema = IfElseSchema
    deferred_keys = frozenset({
        "if_actions", "else_actions", "final_actions", "else_if_conditions[].actions",
    })

    def __init__(self):
        self.branch = "none"

    async def run(self, params: IfElseSchema, frame: ExecutionFrame) -> str:
        prefix = f"{frame.action_id}-nested"
        error: Optional[Exception] = None

        try:
            await self._run_branch(params, frame, prefix)
        except Exception as e:
            error = e

        try:
            await run_nested(frame, params.final_actions, f"{prefix}-final")
        except Exception as e:
            if error is None:
                error = e
            else:
                logger.warning("final_actions_failed", action_id=frame.action_id, error=str(e))

        if error is not None:
            raise error
        return "Successfully completed conditional logic"

    async def _run_branch(self, params: IfElseSchema, frame: ExecutionFrame, prefix: str) -> None:
        page = self.page(frame)

        if await check_element_condition(page, params.selector, params.condition_type):
            self.branch = "if"
            await run_nested(frame, params.if_actions, f"{prefix}-if")
            return

        for index, entry in enumerate(params.else_if_conditions):
            if not isinstance(entry, dict):
                logger.warning("else_if_invalid", action_id=frame.action_id, index=index)
                continue
            selector = entry.get("selector")
            condition_type = entry.get("condition_type")
            if not selector or condition_type not in ELEMENT_CONDITIONS:
                logger.warning("else_if_invalid", action_id=frame.action_id, index=index)
                continue
            try:
                matched = await check_element_condition(page, selector, condition_type)
            except Exception as e:
                logger.warning("else_if_condition_failed", action_id=frame.action_id,
                               index=index, error=str(e))
                continue
            if matched:
                self.branch = f"else_if[{index}]"
                await run_nested(frame, entry.get("actions") or [], f"{prefix}-else_if-{index}")
                return

        if params.else_actions:
            self.branch = "else"
            await run_nested(frame, params.else_actions, f"{prefix}-else")

    def event_data(self, params: Any) -> Optional[dict[str, Any]]:
        return {"branch": self.branch}


class LoopUntilSchema(ActionSchema):
    selector: Optional[str] = None
    condition_type: Optional[ConditionType] = None
    max_loops: Optional[int] = Field(default=None, ge=1)
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    fail_on_force_stop: bool = False
    loop_actions: list[Any] = Field(default_factory=list)

    @field_validator("max_loops", "timeout_ms", mode="before")
    @classmethod
    def zero_is_unset(cls, v: Any) -> Any:
        return None if v in (0, "0", "") else v

    @model_validator(mode="after")
    def check_bounds(self) -> "LoopUntilSchema":
        if self.max_loops is None and self.timeout_ms is None:
            raise ValueError("requires either max_loops or timeout_ms to prevent infinite loops")
        if self.selector and not self.condition_type:
            raise ValueError("requires condition_type when selector is provided")
        if not self.loop_actions:
            raise ValueError("requires at least one action in loop_actions")
        return self


class LoopUntilAction(BrowserAction):
    """
    Repeat loop_actions until an element condition holds or a bound is hit.

    The iteration counter is exposed as ``{{localLoopIndex}}`` while the
    loop runs and restored afterwards. ``max_loops`` is the number of times
    loop_actions may run; ``timeout_ms`` bounds wall-clock time.
    """

    action_type = "playwright:loop_until"
    schema = LoopUntilSchema
    deferred_keys = frozenset({"loop_actions"})

    iteration_pause = 0.1

    def __init__(self):
        self.iterations = 0
        self.exit_reason = ""

    async def run(self, params: LoopUntilSchema, frame: ExecutionFrame) -> str:
        variables = frame.variables
        token = frame.run.cancel_token
        saved_local_index = variables.local_loop_index
        started = time.monotonic()
        count = 0

        try:
            while True:
                token.check("loop cancelled")
                count += 1
                variables.local_loop_index = count

                if params.selector and await self._condition_met(params, frame):
                    self.exit_reason = "condition met"
                    break

                stop_reasons = []
                if params.max_loops is not None and count > params.max_loops:
                    stop_reasons.append(f"reached maximum loops ({params.max_loops})")
                elapsed_ms = (time.monotonic() - started) * 1000
                if params.timeout_ms is not None and elapsed_ms >= params.timeout_ms:
                    stop_reasons.append(f"reached timeout ({params.timeout_ms}ms)")

                if stop_reasons:
                    message = "Loop force stopped: " + " and ".join(stop_reasons)
                    if params.fail_on_force_stop:
                        raise ActionError(message, action_id=frame.action_id,
                                          action_type=self.action_type)
                    logger.info("loop_force_stopped", action_id=frame.action_id,
                                iterations=self.iterations, reason=message)
                    self.exit_reason = message
                    break

                await run_nested(
                    frame,
                    params.loop_actions,
                    f"{frame.action_id}-loop-{count}",
                    checkpoint="loop cancelled during action execution",
                )
                self.iterations += 1
                await asyncio.sleep(self.iteration_pause)
        finally:
            variables.local_loop_index = saved_local_index

        return f"Loop completed after {self.iterations} iterations: {self.exit_reason}"

    async def _condition_met(self, params: LoopUntilSchema, frame: ExecutionFrame) -> bool:
        try:
            return await check_element_condition(
                self.page(frame), params.selector, params.condition_type
            )
        except Exception as e:
            logger.warning("loop_condition_check_failed", action_id=frame.action_id,
                           selector=params.selector, error=str(e))
            return False

    def event_data(self, params: Any) -> Optional[dict[str, Any]]:
        return {"iterations": self.iterations, "exit_reason": self.exit_reason}


CONTROL_ACTIONS = [IfElseAction, LoopUntilAction]
