"""
API actions - HTTP requests keyed as ``api:<method>``.

Responses can feed later actions through ``after_hooks``, which copy values
out of the JSON body into runtime variables.
"""

import base64
import json
import time
from typing import Any, Literal, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from ..core.errors import ActionError, FrameworkError, ResolutionError
from ..engine.context import ExecutionFrame
from ..engine.registry import ActionSchema, PluginAction
from ..engine.variables import extract_json_path

logger = structlog.get_logger()

DEFAULT_TIMEOUT_MS = 30000
MAX_LOGGED_BODY = 10000

SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "x-api-key", "cookie"})
REDACTED = "[REDACTED]"


def redact_headers(headers: dict[str, str], extra: Optional[str] = None) -> dict[str, str]:
    """Copy ``headers`` with credential values masked."""
    sensitive = SENSITIVE_HEADERS | ({extra.lower()} if extra else set())
    return {k: REDACTED if k.lower() in sensitive else v for k, v in headers.items()}


class AfterHook(BaseModel):
    path: str = Field(min_length=1)
    save_as: str = Field(min_length=1)
    scope: Literal["local", "global"] = "local"


class AuthConfig(BaseModel):
    type: Literal["bearer", "basic", "api_key", "custom"]
    token: str = ""
    username: Optional[str] = None
    password: Optional[str] = None
    header: str = "X-API-Key"


class ApiSchema(ActionSchema):
    url: str = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, ge=1)
    auth: Optional[AuthConfig] = None
    after_hooks: list[AfterHook] = Field(default_factory=list)


class ApiAction(PluginAction):
    """Shared request logic for every HTTP method."""

    method = "GET"
    schema = ApiSchema

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport
        self.response_data: dict[str, Any] = {}

    async def run(self, params: ApiSchema, frame: ExecutionFrame) -> str:
        headers = dict(params.headers)
        content = self._encode_body(params.body)
        if content is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

        # The logged copy never carries credentials
        logged_headers = redact_headers(headers, params.auth.header if params.auth else None)
        headers = self._add_auth(headers, params, frame)

        self.response_data = {
            "url": params.url,
            "method": self.method,
            "status_code": 0,
            "response_time_ms": 0,
            "request_headers": logged_headers,
            "response_body": "",
            "extracted_vars": {},
        }

        frame.run.logger.info("api_request", method=self.method, url=params.url)
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.request(
                    self.method,
                    params.url,
                    headers=headers,
                    content=content,
                    timeout=params.timeout / 1000,
                )
        except httpx.HTTPError as e:
            self.response_data["error"] = str(e)
            raise ActionError(f"HTTP request failed: {e}", action_id=frame.action_id,
                              action_type=self.action_type) from e
        finally:
            self.response_data["response_time_ms"] = int((time.monotonic() - started) * 1000)

        self.response_data["status_code"] = response.status_code
        self.response_data["response_body"] = response.text[:MAX_LOGGED_BODY]

        if response.status_code >= 400:
            self.response_data["error"] = f"HTTP {response.status_code}: {response.reason_phrase}"
            raise ActionError(
                f"HTTP request failed with status {response.status_code}",
                action_id=frame.action_id,
                action_type=self.action_type,
            )

        if params.after_hooks:
            self._run_after_hooks(params.after_hooks, response, frame)

        return (
            f"Successfully executed {self.method} request to {params.url} "
            f"(HTTP {response.status_code})"
        )

    def _add_auth(self, headers: dict[str, str], params: ApiSchema,
                  frame: ExecutionFrame) -> dict[str, str]:
        headers = dict(headers)
        auth = params.auth

        if auth is None:
            # Fall back to credentials captured earlier in the run
            variables = frame.variables
            token = variables.runtime_vars.get("access_token")
            api_key = variables.runtime_vars.get("api_key")
            if token and "Authorization" not in headers:
                headers["Authorization"] = f"Bearer {token}"
            elif api_key and "X-API-Key" not in headers:
                headers["X-API-Key"] = str(api_key)
            return headers

        if auth.type == "bearer":
            headers["Authorization"] = f"Bearer {auth.token}"
        elif auth.type == "basic":
            credentials = auth.token
            if auth.username is not None:
                raw = f"{auth.username}:{auth.password or ''}".encode()
                credentials = base64.b64encode(raw).decode()
            headers["Authorization"] = f"Basic {credentials}"
        elif auth.type == "api_key":
            headers[auth.header or "X-API-Key"] = auth.token
        else:
            headers["Authorization"] = auth.token
        return headers

    @staticmethod
    def _encode_body(body: Any) -> Optional[bytes]:
        if body is None or body == "":
            return None
        if isinstance(body, str):
            return body.encode()
        return json.dumps(body).encode()

    def _run_after_hooks(self, hooks: list[AfterHook], response: httpx.Response,
                         frame: ExecutionFrame) -> None:
        try:
            data = response.json()
        except ValueError:
            logger.warning("api_response_not_json", url=str(response.url),
                           action_id=frame.action_id)
            return

        extracted = self.response_data["extracted_vars"]
        for hook in hooks:
            try:
                value = extract_json_path(data, hook.path)
            except ResolutionError as e:
                logger.warning("after_hook_extract_failed", path=hook.path,
                               save_as=hook.save_as, error=e.message)
                continue
            frame.variables.set_runtime(hook.save_as, value, hook.scope)
            extracted[hook.save_as] = value
            logger.info("after_hook_saved", save_as=hook.save_as, scope=hook.scope,
                        action_id=frame.action_id)

    def event_data(self, params: Any) -> Optional[dict[str, Any]]:
        if not self.response_data:
            return None
        return {"api_response": self.response_data}

    def wrap_error(self, error: Exception, params: Any) -> FrameworkError:
        self.response_data.setdefault("error", str(error))
        return ActionError(f"{self.action_type} failed: {error}", action_type=self.action_type)


class ApiGetAction(ApiAction):
    action_type = "api:get"
    method = "GET"


class ApiPostAction(ApiAction):
    action_type = "api:post"
    method = "POST"


class ApiPutAction(ApiAction):
    action_type = "api:put"
    method = "PUT"


class ApiPatchAction(ApiAction):
    action_type = "api:patch"
    method = "PATCH"


class ApiDeleteAction(ApiAction):
    action_type = "api:delete"
    method = "DELETE"


API_ACTIONS: list[type[ApiAction]] = [
    ApiGetAction,
    ApiPostAction,
    ApiPutAction,
    ApiPatchAction,
    ApiDeleteAction,
]
