"""
Run orchestrator - executes an automation once per loop index.

Loop indices run sequentially (stop at the first failure, delay between
runs) or in parallel (every loop index finishes, the first failure wins).
All of them share one event pipeline and one progress aggregator.
"""

import asyncio
import random
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Optional

import structlog

from ..core.config import AutomationConfig
from ..core.errors import BrowserError, FrameworkError, RunCancelledError
from ..core.models import Automation, AutomationRun, RunStatus
from ..engine.conditions import should_skip_step
from ..engine.context import CancellationToken, ExecutionFrame, RunContext, VariableContext
from ..engine.dispatch import execute_action
from ..engine.events import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_FLUSH_INTERVAL,
    EventPipeline,
    EventType,
    ProgressAggregator,
    RunEvent,
)
from ..engine.registry import ActionRegistry
from ..engine.variables import VariableResolver
from ..services.notification import NotificationMessage, NotificationService

logger = structlog.get_logger()

SessionFactory = Callable[[int], AsyncContextManager[Any]]


class Runner:
    """
    Executes automations.

    Collaborators are injected: the action registry, a browser session
    factory (``loop_index -> async context manager yielding a page``), the
    storage service, the run store and the notification service. Any of
    the last four may be None.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        session_factory: Optional[SessionFactory] = None,
        storage: Any = None,
        store: Any = None,
        notifier: Optional[NotificationService] = None,
        resolver: Optional[VariableResolver] = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        rng: Optional[random.Random] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.storage = storage
        self.store = store
        self.notifier = notifier
        self.resolver = resolver or VariableResolver()
        self.flush_interval = flush_interval
        self.buffer_size = buffer_size
        self.rng = rng or random.Random()

        self._notifications: set[asyncio.Task] = set()

    async def run_automation(
        self,
        automation: Automation,
        run: AutomationRun,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """
        Execute every loop index of ``automation`` and finalize ``run``.

        Raises the run's terminal error after the record is finalized.
        Unexpected exceptions mark the run failed and are re-raised as is.
        """
        token = cancel_token or CancellationToken()
        run.status = RunStatus.RUNNING
        run.start_time = run.start_time or datetime.now(timezone.utc)
        await self._save(run)

        pipeline = EventPipeline(maxsize=self.buffer_size)
        aggregator = ProgressAggregator(pipeline, run, self.store, self.flush_interval)
        aggregator.start()

        log = logger.bind(run_id=run.id, automation_id=automation.id)
        log.info("automation_run_started", name=automation.name)

        config: Optional[AutomationConfig] = None
        try:
            config, error = await self._execute(automation, run, pipeline, token)
        except asyncio.CancelledError:
            token.cancel("run task cancelled")
            await aggregator.cancel()
            await self._finish(automation, run, config, pipeline, aggregator,
                               RunCancelledError("run task cancelled"))
            raise
        except Exception as e:
            log.exception("automation_run_crashed", error=str(e))
            await self._finish(automation, run, config, pipeline, aggregator,
                               None, unexpected=e)
            raise

        await self._finish(automation, run, config, pipeline, aggregator, error)
        if error is not None:
            raise error

    async def _execute(
        self,
        automation: Automation,
        run: AutomationRun,
        pipeline: EventPipeline,
        token: CancellationToken,
    ) -> tuple[Optional[AutomationConfig], Optional[FrameworkError]]:
        try:
            config = AutomationConfig.parse(automation.config)
        except FrameworkError as e:
            logger.error("automation_config_invalid", run_id=run.id, error=e.message)
            return None, e

        timeout_handle = asyncio.get_running_loop().call_later(
            config.timeout_s,
            token.cancel,
            f"automation timed out after {config.timeout_s}s",
            True,
        )
        logger.info("automation_run_plan", run_id=run.id, count=config.run_count,
                    mode=config.run_mode, delay_ms=config.multirun.delay_ms,
                    timeout_s=config.timeout_s)

        # Written by after-hooks with scope "global"; visible to every loop index
        global_vars: dict[str, Any] = {}
        try:
            if config.run_mode == "parallel":
                error = await self._run_parallel(automation, config, run, pipeline, token, global_vars)
            else:
                error = await self._run_sequential(automation, config, run, pipeline, token, global_vars)
        finally:
            timeout_handle.cancel()
        return config, error

    async def _run_sequential(self, automation, config, run, pipeline, token, global_vars):
        count = config.run_count
        for loop_index in range(count):
            try:
                await self.execute_single_run(
                    automation, config, run, loop_index, pipeline, token, global_vars
                )
            except FrameworkError as e:
                logger.error("loop_failed", run_id=run.id, loop_index=loop_index, error=e.message)
                return e

            if loop_index < count - 1 and config.multirun.delay_ms > 0:
                await asyncio.sleep(config.multirun.delay_ms / 1000)
        return None

    async def _run_parallel(self, automation, config, run, pipeline, token, global_vars):
        first_error: Optional[FrameworkError] = None
        lock = asyncio.Lock()

        async def run_one(loop_index: int) -> None:
            nonlocal first_error
            try:
                await self.execute_single_run(
                    automation, config, run, loop_index, pipeline, token, global_vars
                )
            except FrameworkError as e:
                logger.error("loop_failed", run_id=run.id, loop_index=loop_index, error=e.message)
                async with lock:
                    if first_error is None:
                        first_error = e

        results = await asyncio.gather(
            *(run_one(i) for i in range(config.run_count)),
            return_exceptions=True,
        )
        # Only unexpected exceptions reach here; re-raise after all loops finished
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return first_error

    async def execute_single_run(
        self,
        automation: Automation,
        config: AutomationConfig,
        run: AutomationRun,
        loop_index: int,
        pipeline: EventPipeline,
        token: CancellationToken,
        global_vars: Optional[dict[str, Any]] = None,
    ) -> None:
        """Run every step of the automation for one loop index."""
        log = logger.bind(run_id=run.id, loop_index=loop_index)
        variables = VariableContext(
            loop_index=loop_index,
            run_id=run.id,
            user_id=automation.user_id,
            project_id=automation.project_id,
            automation_id=automation.id,
            static_vars={v.key: v.value for v in config.variables if v.type == "static"},
            global_vars=global_vars if global_vars is not None else {},
        )

        async with AsyncExitStack() as stack:
            page = None
            if self.session_factory is not None:
                try:
                    page = await stack.enter_async_context(self.session_factory(loop_index))
                except Exception as e:
                    raise BrowserError(f"failed to open browser session: {e}") from e

            ctx = RunContext(
                run_id=run.id,
                config=config,
                variables=variables,
                events=pipeline,
                registry=self.registry,
                resolver=self.resolver,
                cancel_token=token,
                page=page,
                storage=self.storage,
            )
            log.info("loop_started")

            for step in automation.ordered_steps():
                token.check()
                if should_skip_step(step.config, loop_index, self.rng):
                    log.info("step_skipped", step_id=step.id, step_name=step.name)
                    continue

                pipeline.emit(RunEvent(
                    type=EventType.STEP,
                    step_id=step.id,
                    step_name=step.name,
                    message=f"Starting step {step.name}",
                    loop_index=loop_index,
                ))

                for action in step.ordered_actions():
                    token.check()
                    frame = ExecutionFrame(
                        run=ctx,
                        step_id=step.id,
                        step_name=step.name,
                        action_id=action.id,
                        action_name=action.name,
                        action_type=action.action_type,
                    )
                    try:
                        await execute_action(frame, action.action_config)
                    except FrameworkError as e:
                        log.error("action_failed", step_id=step.id, action_id=action.id,
                                  action_type=action.action_type, error=e.message)
                        if not isinstance(e, RunCancelledError) and config.screenshots.on_error:
                            await self._capture_screenshot(frame, config)
                        raise

            if config.screenshots.on_success:
                await self._capture_screenshot(ExecutionFrame(run=ctx), config)
            log.info("loop_completed")

    async def _capture_screenshot(self, frame: ExecutionFrame, config: AutomationConfig) -> None:
        """Upload a screenshot of the loop index's page. Failures are logged only."""
        page = frame.run.page
        if not config.screenshots.enabled or page is None or self.storage is None:
            return
        try:
            data = await page.screenshot()
            key = self.resolver.resolve_string(config.screenshots.path, frame.variables, config)
            url = await self.storage.upload_file(key, data, "image/png")
        except Exception as e:
            logger.warning("screenshot_capture_failed", run_id=frame.run.run_id,
                           action_id=frame.action_id, error=str(e))
            return
        frame.emit_output_file(url)

    async def _finish(
        self,
        automation: Automation,
        run: AutomationRun,
        config: Optional[AutomationConfig],
        pipeline: EventPipeline,
        aggregator: ProgressAggregator,
        error: Optional[FrameworkError],
        unexpected: Optional[BaseException] = None,
    ) -> None:
        await pipeline.close()
        await aggregator.wait_closed()

        run.end_time = datetime.now(timezone.utc)
        if unexpected is not None:
            run.status = RunStatus.FAILED
            run.error_message = f"unexpected error: {unexpected}"
        elif isinstance(error, RunCancelledError) and not error.timed_out:
            run.status = RunStatus.CANCELLED
            run.error_message = error.message
        elif error is not None:
            run.status = RunStatus.FAILED
            run.error_message = error.message
        elif run.error_message:
            run.status = RunStatus.FAILED
        else:
            run.status = RunStatus.COMPLETED

        await self._save(run)
        logger.info("automation_run_finished", run_id=run.id, status=run.status.value,
                    error=run.error_message or None, logs=len(run.logs),
                    output_files=len(run.output_files), dropped_events=run.dropped_events)

        if config is not None:
            self._notify(automation, run, config)

    async def _save(self, run: AutomationRun) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_run(run)
        except Exception as e:
            logger.error("run_save_failed", run_id=run.id, error=str(e))

    def _notify(self, automation: Automation, run: AutomationRun, config: AutomationConfig) -> None:
        if self.notifier is None or not config.notifications:
            return
        message = NotificationMessage(
            automation_id=automation.id,
            automation_name=automation.name,
            project_id=automation.project_id,
            project_name=automation.project_name,
            run_id=run.id,
            status=run.status.value,
            start_time=run.start_time,
            end_time=run.end_time,
            error_message=run.error_message,
            output_files=list(run.output_files),
            logs_count=len(run.logs),
        )
        task = asyncio.create_task(self._dispatch(message, list(config.notifications)))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _dispatch(self, message: NotificationMessage, channels) -> None:
        try:
            await self.notifier.dispatch(message, channels)
        except Exception as e:
            logger.error("notification_dispatch_failed", run_id=message.run_id, error=str(e))

    async def wait_for_notifications(self) -> None:
        """Wait for in-flight notification dispatches (used on shutdown)."""
        if self._notifications:
            await asyncio.gather(*self._notifications, return_exceptions=True)
