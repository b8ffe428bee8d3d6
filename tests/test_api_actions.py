"""Tests for the HTTP API actions."""

import base64
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from autorunner.api.actions import ApiDeleteAction, ApiGetAction, ApiPostAction
from autorunner.core.errors import ActionConfigError, ActionError
from autorunner.engine.context import VariableContext
from autorunner.engine.dispatch import execute_action


class Recorder:
    """MockTransport handler that remembers requests and replies from a table."""

    def __init__(self, status: int = 200, payload=None, text: str = None):
        self.status = status
        self.payload = payload if payload is not None else {"ok": True}
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status, text=self.text)
        return httpx.Response(self.status, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class TestRequests:
    """Request building."""

    @pytest.mark.asyncio
    async def test_get(self, make_frame, drain):
        """A GET returns a success message with the status."""
        handler = Recorder()
        frame = make_frame(page=None, action_id="api", action_type="api:get")
        await ApiGetAction(handler.transport).execute({"url": "https://api.test/items"}, frame)

        assert handler.requests[0].method == "GET"
        assert str(handler.requests[0].url) == "https://api.test/items"
        logs = await drain(frame.run.events)
        assert logs[0]["message"] == "Successfully executed GET request to https://api.test/items (HTTP 200)"

    @pytest.mark.asyncio
    async def test_post_json_body(self, make_frame):
        """Structured bodies are sent as JSON with a content type."""
        handler = Recorder(status=201)
        frame = make_frame(page=None, action_type="api:post")
        await ApiPostAction(handler.transport).execute(
            {"url": "https://api.test/users", "body": {"name": "Ada"}}, frame
        )
        request = handler.requests[0]
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {"name": "Ada"}

    @pytest.mark.asyncio
    async def test_explicit_content_type_kept(self, make_frame):
        """A caller-supplied content type is not overwritten."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:post")
        await ApiPostAction(handler.transport).execute({
            "url": "https://api.test/raw",
            "headers": {"Content-Type": "text/plain"},
            "body": "hello",
        }, frame)
        assert handler.requests[0].headers["content-type"] == "text/plain"
        assert handler.requests[0].content == b"hello"

    @pytest.mark.asyncio
    async def test_templates_resolved_through_dispatch(self, make_frame, monkeypatch):
        """URL and body templates resolve when dispatched through the registry."""
        handler = Recorder()
        frame = make_frame(
            page=None,
            variables=VariableContext(loop_index=3, run_id="r-9"),
            action_type="api:delete",
        )
        monkeypatch.setitem(frame.run.registry._factories, "api:delete",
                            lambda: ApiDeleteAction(handler.transport))
        await execute_action(frame, {"url": "https://api.test/runs/{{runId}}/{{loopIndex}}"})
        assert str(handler.requests[0].url) == "https://api.test/runs/r-9/3"
        assert handler.requests[0].method == "DELETE"

    @pytest.mark.asyncio
    async def test_requires_url(self, make_frame):
        """url is mandatory."""
        frame = make_frame(page=None, action_type="api:get")
        with pytest.raises(ActionConfigError, match="api:get requires 'url'"):
            await ApiGetAction(Recorder().transport).execute({}, frame)


class TestAuth:
    """Authorization headers."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("auth,header,expected", [
        ({"type": "bearer", "token": "t0k"}, "authorization", "Bearer t0k"),
        ({"type": "api_key", "token": "k3y"}, "x-api-key", "k3y"),
        ({"type": "api_key", "token": "k3y", "header": "X-Token"}, "x-token", "k3y"),
        ({"type": "custom", "token": "Scheme abc"}, "authorization", "Scheme abc"),
    ])
    async def test_auth_types(self, make_frame, auth, header, expected):
        """Each auth type sets its header."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        await ApiGetAction(handler.transport).execute(
            {"url": "https://api.test/me", "auth": auth}, frame
        )
        assert handler.requests[0].headers[header] == expected

    @pytest.mark.asyncio
    async def test_basic_auth_from_credentials(self, make_frame):
        """Basic auth encodes username and password."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        await ApiGetAction(handler.transport).execute({
            "url": "https://api.test/me",
            "auth": {"type": "basic", "username": "ada", "password": "pw"},
        }, frame)
        expected = "Basic " + base64.b64encode(b"ada:pw").decode()
        assert handler.requests[0].headers["authorization"] == expected

    @pytest.mark.asyncio
    async def test_captured_access_token_is_reused(self, make_frame):
        """An access_token saved earlier in the run becomes a bearer token."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        frame.variables.runtime_vars["access_token"] = "from-login"
        await ApiGetAction(handler.transport).execute({"url": "https://api.test/me"}, frame)
        assert handler.requests[0].headers["authorization"] == "Bearer from-login"

    @pytest.mark.asyncio
    async def test_captured_api_key_is_reused(self, make_frame):
        """Without a token, a saved api_key is sent instead."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        frame.variables.runtime_vars["api_key"] = "saved-key"
        await ApiGetAction(handler.transport).execute({"url": "https://api.test/me"}, frame)
        assert handler.requests[0].headers["x-api-key"] == "saved-key"
        assert "authorization" not in handler.requests[0].headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config,secret", [
        ({"auth": {"type": "bearer", "token": "t0k-secret"}}, "t0k-secret"),
        ({"auth": {"type": "basic", "username": "ada", "password": "pw"}},
         base64.b64encode(b"ada:pw").decode()),
        ({"auth": {"type": "api_key", "token": "k3y-secret", "header": "X-Token"}}, "k3y-secret"),
        ({"headers": {"Authorization": "Bearer typed-secret", "Accept": "text/plain"}},
         "typed-secret"),
    ])
    async def test_credentials_not_in_event_data(self, make_frame, drain, config, secret):
        """Logged request headers never carry credential values."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        await ApiGetAction(handler.transport).execute(
            {"url": "https://api.test/me", **config}, frame
        )
        logs = await drain(frame.run.events)
        assert secret not in json.dumps(logs[0]["data"])
        assert secret in json.dumps(dict(handler.requests[0].headers))

    @pytest.mark.asyncio
    async def test_captured_token_not_in_event_data(self, make_frame, drain):
        """A reused access_token is sent but not recorded."""
        handler = Recorder()
        frame = make_frame(page=None, action_type="api:get")
        frame.variables.runtime_vars["access_token"] = "from-login"
        await ApiGetAction(handler.transport).execute(
            {"url": "https://api.test/me", "headers": {"Accept": "application/json"}}, frame
        )
        logs = await drain(frame.run.events)
        recorded = logs[0]["data"]["api_response"]["request_headers"]
        assert recorded == {"Accept": "application/json"}
        assert "from-login" not in json.dumps(logs[0]["data"])


class TestAfterHooks:
    """Copying response values into variables."""

    @pytest.mark.asyncio
    async def test_local_and_global(self, make_frame, drain):
        """Hooks write to the scope they name and are reported in the event data."""
        handler = Recorder(payload={"data": {"token": "abc", "items": [{"id": 7}]}})
        frame = make_frame(page=None, action_id="login", action_type="api:post")
        await ApiPostAction(handler.transport).execute({
            "url": "https://api.test/login",
            "after_hooks": [
                {"path": "data.token", "save_as": "access_token"},
                {"path": "data.items[0].id", "save_as": "first_id", "scope": "global"},
            ],
        }, frame)

        assert frame.variables.runtime_vars["access_token"] == "abc"
        assert frame.variables.global_vars["first_id"] == 7

        logs = await drain(frame.run.events)
        api_response = logs[0]["data"]["api_response"]
        assert api_response["status_code"] == 200
        assert api_response["extracted_vars"] == {"access_token": "abc", "first_id": 7}

    @pytest.mark.asyncio
    async def test_missing_path_is_skipped(self, make_frame):
        """A path that does not exist leaves other hooks working."""
        handler = Recorder(payload={"a": 1})
        frame = make_frame(page=None, action_type="api:get")
        await ApiGetAction(handler.transport).execute({
            "url": "https://api.test/x",
            "after_hooks": [{"path": "b.c", "save_as": "missing"},
                            {"path": "a", "save_as": "found"}],
        }, frame)
        assert "missing" not in frame.variables.runtime_vars
        assert frame.variables.runtime_vars["found"] == 1

    @pytest.mark.asyncio
    async def test_non_json_response(self, make_frame):
        """Hooks are skipped when the body is not JSON."""
        handler = Recorder(text="<html>")
        frame = make_frame(page=None, action_type="api:get")
        await ApiGetAction(handler.transport).execute({
            "url": "https://api.test/page",
            "after_hooks": [{"path": "a", "save_as": "a"}],
        }, frame)
        assert frame.variables.runtime_vars == {}


class TestFailures:
    """Error statuses and transport errors."""

    @pytest.mark.asyncio
    async def test_error_status(self, make_frame, drain):
        """Status 400 and above fails the action with the status recorded."""
        handler = Recorder(status=404, payload={"detail": "nope"})
        frame = make_frame(page=None, action_id="api", action_type="api:get")
        with pytest.raises(ActionError, match="HTTP request failed with status 404"):
            await ApiGetAction(handler.transport).execute({"url": "https://api.test/gone"}, frame)

        logs = await drain(frame.run.events)
        assert logs[0]["status"] == "failed"
        assert logs[0]["data"]["api_response"]["status_code"] == 404
        assert logs[0]["data"]["api_response"]["error"] == "HTTP 404: Not Found"

    @pytest.mark.asyncio
    async def test_transport_error(self, make_frame):
        """Connection failures become ActionError."""

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        frame = make_frame(page=None, action_type="api:get")
        with pytest.raises(ActionError, match="HTTP request failed: connection refused"):
            await ApiGetAction(httpx.MockTransport(refuse)).execute(
                {"url": "https://api.test/down"}, frame
            )
