"""Action registry and the base class for plugin actions."""

import time
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from ..core.errors import ActionConfigError, ActionError, FrameworkError, UnknownActionError
from .context import ExecutionFrame

logger = structlog.get_logger()


class ActionSchema(BaseModel):
    """Base config schema. Unknown keys are kept for forward compatibility."""
    model_config = ConfigDict(extra="allow")


class PluginAction:
    """
    Base class for actions.

    Subclasses set ``action_type`` and ``schema`` and implement ``run``.
    ``execute`` validates the config, times the call and emits exactly one
    terminal event: a log on success, an error on failure. Validation
    failures raise before anything runs and emit nothing.

    ``deferred_keys`` names config keys holding nested action lists; the
    dispatcher leaves them unresolved so each nested action resolves its
    own tokens when it runs.
    """

    action_type: str = ""
    schema: type[ActionSchema] = ActionSchema
    deferred_keys: frozenset[str] = frozenset()

    async def execute(self, config: dict[str, Any], frame: ExecutionFrame) -> None:
        params = self.validate(config)

        started = time.monotonic()
        try:
            message = await self.run(params, frame)
        except FrameworkError as e:
            frame.emit_error(e.message, self._elapsed_ms(started), data=self.event_data(params))
            raise
        except Exception as e:
            error = self.wrap_error(e, params)
            frame.emit_error(error.message, self._elapsed_ms(started),
                             data=self.event_data(params))
            raise error from e

        frame.emit_log(message or f"{self.action_type} completed", self._elapsed_ms(started),
                       data=self.event_data(params))

    def validate(self, config: dict[str, Any]) -> Any:
        """Check config against the action schema."""
        try:
            return self.schema.model_validate(config or {})
        except ValidationError as e:
            raise self._config_error(e)

    async def run(self, params: Any, frame: ExecutionFrame) -> Optional[str]:
        """Perform the action and return the success message."""
        raise NotImplementedError

    def event_data(self, params: Any) -> Optional[dict[str, Any]]:
        return None

    def wrap_error(self, error: Exception, params: Any) -> FrameworkError:
        return ActionError(f"{self.action_type} failed: {error}", action_type=self.action_type)

    def _config_error(self, error: ValidationError) -> ActionConfigError:
        first = error.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        if first.get("type") == "missing":
            message = f"{self.action_type} requires '{field}'"
        elif first.get("type") == "value_error":
            message = f"{self.action_type} {first['msg'].removeprefix('Value error, ')}"
        else:
            message = f"{self.action_type}: invalid '{field}': {first['msg']}"
        return ActionConfigError(message, action_type=self.action_type, field=field)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


ActionFactory = Callable[[], PluginAction]


class ActionRegistry:
    """
    Type-string keyed action factories.

    Built once at startup, then frozen. ``get`` returns a new instance on
    every call so actions never share state between invocations.
    """

    def __init__(self):
        self._factories: dict[str, ActionFactory] = {}
        self._frozen = False

    def register(self, action_type: str, factory: ActionFactory) -> None:
        """Register an action factory."""
        if self._frozen:
            raise RuntimeError(f"registry is frozen; cannot register {action_type}")
        if action_type in self._factories:
            logger.warning("action_type_replaced", action_type=action_type)
        self._factories[action_type] = factory

    def register_plugin(self, action_cls: type[PluginAction]) -> None:
        self.register(action_cls.action_type, action_cls)

    def freeze(self) -> None:
        self._frozen = True

    def get(self, action_type: str) -> PluginAction:
        """Create a fresh action instance."""
        factory = self._factories.get(action_type)
        if factory is None:
            raise UnknownActionError(action_type)
        return factory()

    def list_actions(self) -> list[str]:
        """List all registered action types."""
        return sorted(self._factories)

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._factories
