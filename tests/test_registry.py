"""Tests for the action registry, the action contract and dispatch."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from conftest import RecordAction, record

from autorunner.core.errors import ActionConfigError, ActionError, UnknownActionError
from autorunner.engine.context import VariableContext
from autorunner.engine.dispatch import execute_action, parse_nested_action, run_nested
from autorunner.engine.registry import ActionRegistry


class TestActionRegistry:
    """Registration and lookup."""

    def test_get_returns_new_instance(self, registry):
        """Each lookup builds a fresh action."""
        first = registry.get("playwright:click")
        second = registry.get("playwright:click")
        assert first is not second
        assert type(first) is type(second)

    def test_unknown_type(self, registry):
        """Unknown types raise UnknownActionError."""
        with pytest.raises(UnknownActionError, match="action type nope:nothing not found"):
            registry.get("nope:nothing")

    def test_frozen_registry_rejects_registration(self, registry):
        """Registrations after startup are refused."""
        with pytest.raises(RuntimeError):
            registry.register("test:late", lambda: RecordAction([]))

    def test_registries_are_independent(self):
        """Two registries do not share entries."""
        a, b = ActionRegistry(), ActionRegistry()
        a.register("test:record", lambda: RecordAction([]))
        assert "test:record" in a
        assert "test:record" not in b

    def test_builtin_catalogue(self, registry):
        """Browser, control-flow, API and storage actions are all registered."""
        actions = registry.list_actions()
        for action_type in [
            "playwright:goto", "playwright:click", "playwright:fill", "playwright:type",
            "playwright:press", "playwright:check", "playwright:uncheck",
            "playwright:select_option", "playwright:wait_for_selector",
            "playwright:wait_for_timeout", "playwright:screenshot", "playwright:evaluate",
            "playwright:hover", "playwright:scroll", "playwright:get_text",
            "playwright:get_attribute", "playwright:wait_for_load_state",
            "playwright:set_viewport", "playwright:reload", "playwright:go_back",
            "playwright:go_forward", "playwright:if_else", "playwright:log",
            "playwright:loop_until", "api:get", "api:post", "api:put", "api:patch",
            "api:delete", "r2:upload", "r2:delete", "r2:list",
        ]:
            assert action_type in actions


class TestActionContract:
    """Validation and terminal events."""

    @pytest.mark.asyncio
    async def test_missing_required_field(self, make_frame, page, drain):
        """A missing field fails before any side effect or event."""
        frame = make_frame(action_id="a1", action_type="playwright:click")
        with pytest.raises(ActionConfigError, match="playwright:click requires 'selector'"):
            await execute_action(frame, {})
        assert page.calls == []
        assert await drain(frame.run.events) == []

    @pytest.mark.asyncio
    async def test_mistyped_field(self, make_frame):
        """A wrongly typed field names the field."""
        frame = make_frame(action_id="a1", action_type="playwright:set_viewport")
        with pytest.raises(ActionConfigError, match="invalid 'width'"):
            await execute_action(frame, {"width": "wide", "height": 100})

    @pytest.mark.asyncio
    async def test_success_emits_one_log(self, make_frame, drain):
        """A successful action emits exactly one success entry."""
        frame = make_frame(action_id="a1", action_type="playwright:click")
        await execute_action(frame, {"selector": "#go"})
        logs = await drain(frame.run.events)
        assert len(logs) == 1
        assert logs[0]["status"] == "success"
        assert logs[0]["action_id"] == "a1"
        assert logs[0]["message"] == "Successfully clicked element #go"

    @pytest.mark.asyncio
    async def test_failure_emits_one_error(self, make_frame, page, drain):
        """A failing action emits exactly one error entry and raises."""
        page.failing.add("#gone")
        frame = make_frame(action_id="a1", action_type="playwright:click")
        with pytest.raises(ActionError, match="element #gone not found"):
            await execute_action(frame, {"selector": "#gone"})
        logs = await drain(frame.run.events)
        assert [entry["status"] for entry in logs] == ["failed"]
        assert "element #gone not found" in logs[0]["error"]

    @pytest.mark.asyncio
    async def test_unknown_fields_pass_through(self, make_frame, calls):
        """Fields outside the schema are kept."""
        frame = make_frame(action_id="a1", action_type="test:record")
        await execute_action(frame, {"label": "x", "future_option": 1})
        assert calls[0]["config"]["future_option"] == 1

    @pytest.mark.asyncio
    async def test_config_is_resolved_before_execution(self, make_frame, calls):
        """Templates in the config are resolved against the frame's variables."""
        frame = make_frame(
            variables=VariableContext(loop_index=4, run_id="r"),
            action_id="a1",
            action_type="test:record",
        )
        await execute_action(frame, {"label": "loop-{{loopIndex}}"})
        assert calls[0]["label"] == "loop-4"


class TestNestedDispatch:
    """Nested action lists and execution frames."""

    def test_parse_nested_action(self):
        """Entries need an action_type; config may be a JSON string."""
        parsed = parse_nested_action(
            {"action_type": "test:record", "action_config": '{"label": "x"}'}, "p-nested-0"
        )
        assert parsed.id == "p-nested-0"
        assert parsed.action_config == {"label": "x"}
        assert parse_nested_action({"action_config": {}}, "d") is None
        assert parse_nested_action("not a dict", "d") is None
        assert parse_nested_action({"action_type": "x", "action_config": "{bad"}, "d") is None

    @pytest.mark.asyncio
    async def test_children_point_at_parent(self, make_frame, calls):
        """Nested actions carry the parent id; ids default from the prefix."""
        frame = make_frame(action_id="parent", action_type="playwright:if_else")
        await run_nested(frame, [record("one"), record("two", id="explicit")], "parent-nested")
        assert [(c["action_id"], c["parent_action_id"]) for c in calls] == [
            ("parent-nested-0", "parent"),
            ("explicit", "parent"),
        ]
        # The parent frame itself is untouched
        assert frame.action_id == "parent"
        assert frame.parent_action_id == ""

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, make_frame, calls):
        """Malformed entries are skipped, the rest still run."""
        frame = make_frame(action_id="p")
        await run_nested(frame, [{"nope": 1}, record("ok")], "p-nested")
        assert [c["label"] for c in calls] == ["ok"]

    @pytest.mark.asyncio
    async def test_first_failure_stops_list(self, make_frame, calls):
        """A failing nested action stops the remaining ones."""
        frame = make_frame(action_id="p")
        with pytest.raises(ActionError):
            await run_nested(frame, [record("a"), record("b", fail=True), record("c")], "p-nested")
        assert [c["label"] for c in calls] == ["a", "b"]
