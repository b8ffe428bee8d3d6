"""Shared fixtures: in-memory page, storage, run store and a recording action."""

import os
import sys
from typing import Any, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from autorunner.api.actions import API_ACTIONS
from autorunner.browser.actions import BROWSER_ACTIONS
from autorunner.browser.control import CONTROL_ACTIONS, LoopUntilAction
from autorunner.core.config import AutomationConfig
from autorunner.core.models import AutomationRun
from autorunner.engine.context import (
    CancellationToken,
    ExecutionFrame,
    RunContext,
    VariableContext,
)
from autorunner.engine.events import EventPipeline, ProgressAggregator
from autorunner.engine.registry import ActionRegistry, ActionSchema, PluginAction
from autorunner.engine.variables import VariableResolver
from autorunner.storage.actions import STORAGE_ACTIONS


class FakeMouse:
    def __init__(self, page):
        self.page = page

    async def wheel(self, x, y):
        self.page.calls.append(("wheel", None, {"x": x, "y": y}))


class FakeLocator:
    """Locator stand-in. Element state comes from FakePage.states."""

    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    def _check(self):
        if self.selector in self.page.failing:
            raise RuntimeError(f"element {self.selector} not found")

    async def _state(self, condition: str) -> bool:
        self._check()
        return condition in self.page.states.get(self.selector, set())

    async def is_enabled(self):
        return await self._state("is_enabled")

    async def is_disabled(self):
        return await self._state("is_disabled")

    async def is_visible(self):
        return await self._state("is_visible")

    async def is_hidden(self):
        return await self._state("is_hidden")

    async def is_checked(self):
        return await self._state("is_checked")

    async def is_editable(self):
        return await self._state("is_editable")

    async def _record(self, name, **kwargs):
        self._check()
        self.page.calls.append((name, self.selector, kwargs))

    async def click(self, **kwargs):
        await self._record("click", **kwargs)

    async def fill(self, value, **kwargs):
        await self._record("fill", value=value, **kwargs)

    async def press_sequentially(self, text, **kwargs):
        await self._record("type", text=text, **kwargs)

    async def press(self, key, **kwargs):
        await self._record("press", key=key, **kwargs)

    async def check(self, **kwargs):
        await self._record("check", **kwargs)

    async def uncheck(self, **kwargs):
        await self._record("uncheck", **kwargs)

    async def select_option(self, values, **kwargs):
        await self._record("select_option", values=values, **kwargs)

    async def hover(self, **kwargs):
        await self._record("hover", **kwargs)

    async def scroll_into_view_if_needed(self, **kwargs):
        await self._record("scroll_into_view", **kwargs)

    async def text_content(self, **kwargs):
        self._check()
        return self.page.texts.get(self.selector)

    async def get_attribute(self, name, **kwargs):
        self._check()
        return self.page.attributes.get((self.selector, name))


class FakePage:
    """Records calls; element states are sets of true condition names per selector."""

    def __init__(self, states=None, texts=None, attributes=None, failing=(), eval_result=None):
        self.states: dict[str, set[str]] = states or {}
        self.texts: dict[str, str] = texts or {}
        self.attributes: dict[tuple[str, str], str] = attributes or {}
        self.failing = set(failing)
        self.eval_result = eval_result
        self.calls: list[tuple[str, Optional[str], dict[str, Any]]] = []
        self.mouse = FakeMouse(self)
        self.screenshots = 0
        self.default_timeout = None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def goto(self, url, **kwargs):
        self.calls.append(("goto", None, {"url": url, **kwargs}))

    async def screenshot(self, **kwargs):
        self.screenshots += 1
        return b"\x89PNG-fake"

    async def evaluate(self, expression):
        self.calls.append(("evaluate", None, {"expression": expression}))
        return self.eval_result

    async def wait_for_selector(self, selector, **kwargs):
        if selector in self.failing:
            raise RuntimeError(f"Timeout waiting for {selector}")
        self.calls.append(("wait_for_selector", selector, kwargs))

    async def wait_for_timeout(self, timeout):
        self.calls.append(("wait_for_timeout", None, {"timeout": timeout}))

    async def wait_for_load_state(self, state, **kwargs):
        self.calls.append(("wait_for_load_state", None, {"state": state, **kwargs}))

    async def set_viewport_size(self, size):
        self.calls.append(("set_viewport_size", None, size))

    async def reload(self, **kwargs):
        self.calls.append(("reload", None, kwargs))

    async def go_back(self):
        self.calls.append(("go_back", None, {}))

    async def go_forward(self):
        self.calls.append(("go_forward", None, {}))


class MemoryStorage:
    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    async def upload_file(self, key, data, content_type):
        self.files[key] = data
        self.content_types[key] = content_type
        return f"mem://{key}"

    async def delete_file(self, key):
        self.files.pop(key, None)

    async def list_files(self, prefix=""):
        return sorted(k for k in self.files if k.startswith(prefix))


class MemoryRunStore:
    """Run store stand-in that keeps every write."""

    def __init__(self):
        self.progress: list[tuple[str, list, list]] = []
        self.saved: list[tuple[str, str]] = []

    async def update_run_progress(self, run_id, logs, output_files):
        self.progress.append((run_id, list(logs), list(output_files)))

    async def save_run(self, run):
        self.saved.append((run.id, run.status.value))


class RecordSchema(ActionSchema):
    label: str = ""
    fail: bool = False


class RecordAction(PluginAction):
    """Appends what it saw to a shared list; optionally fails."""

    action_type = "test:record"
    schema = RecordSchema

    def __init__(self, calls: list):
        self.calls = calls

    async def run(self, params: RecordSchema, frame: ExecutionFrame) -> str:
        self.calls.append({
            "label": params.label,
            "action_id": frame.action_id,
            "parent_action_id": frame.parent_action_id,
            "loop_index": frame.variables.loop_index,
            "local_loop_index": frame.variables.local_loop_index,
            "variables": frame.variables,
            "config": params.model_dump(),
        })
        if params.fail:
            raise RuntimeError(f"{params.label} failed")
        return f"recorded {params.label}"


def record(label: str, fail: bool = False, id: Optional[str] = None,
           name: Optional[str] = None, **extra) -> dict:
    """Nested action entry for the recording action."""
    item = {"action_type": "test:record", "action_config": {"label": label, "fail": fail, **extra}}
    if id:
        item["id"] = id
    if name:
        item["name"] = name
    return item


@pytest.fixture(autouse=True)
def fast_loops(monkeypatch):
    monkeypatch.setattr(LoopUntilAction, "iteration_pause", 0)


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def registry(calls) -> ActionRegistry:
    registry = ActionRegistry()
    for action_cls in [*BROWSER_ACTIONS, *CONTROL_ACTIONS, *API_ACTIONS, *STORAGE_ACTIONS]:
        registry.register_plugin(action_cls)
    registry.register("test:record", lambda: RecordAction(calls))
    registry.freeze()
    return registry


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def make_frame(registry, page, storage):
    """Build a root ExecutionFrame around a fresh RunContext."""

    def _make(
        config: Optional[AutomationConfig] = None,
        variables: Optional[VariableContext] = None,
        action_id: str = "root",
        action_type: str = "",
        page: Any = page,
        storage: Any = storage,
        token: Optional[CancellationToken] = None,
        pipeline: Optional[EventPipeline] = None,
    ) -> ExecutionFrame:
        run = RunContext(
            run_id="run-1",
            config=config or AutomationConfig(),
            variables=variables or VariableContext(loop_index=0, run_id="run-1"),
            events=pipeline or EventPipeline(),
            registry=registry,
            resolver=VariableResolver(),
            cancel_token=token or CancellationToken(),
            page=page,
            storage=storage,
        )
        return ExecutionFrame(run=run, step_id="step-1", step_name="Step 1",
                              action_id=action_id, action_type=action_type)

    return _make


async def collect_logs(pipeline: EventPipeline) -> list[dict]:
    """Drain a pipeline through an aggregator and return the log entries."""
    run = AutomationRun(id="collect", automation_id="collect")
    aggregator = ProgressAggregator(pipeline, run, flush_interval=60)
    aggregator.start()
    await pipeline.close()
    await aggregator.wait_closed()
    return run.logs


@pytest.fixture
def drain():
    return collect_logs
