"""Action dispatch: resolve, look up, execute. Used for top-level and nested actions."""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from .context import ExecutionFrame

logger = structlog.get_logger()


@dataclass
class NestedAction:
    """An action embedded in a control-flow action's config."""
    id: str
    action_type: str
    action_config: dict[str, Any] = field(default_factory=dict)
    name: str = ""


async def execute_action(frame: ExecutionFrame, raw_config: dict[str, Any]) -> None:
    """Resolve variables in ``raw_config`` and run the action named by ``frame``."""
    run = frame.run
    action = run.registry.get(frame.action_type)
    config = run.resolver.resolve_config(raw_config, run.variables, run.config,
                                         deferred=action.deferred_keys)
    await action.execute(config, frame)


def parse_nested_action(item: Any, default_id: str) -> Optional[NestedAction]:
    """Read one nested action entry. Returns None for malformed entries."""
    if not isinstance(item, dict):
        return None

    action_type = item.get("action_type")
    if not isinstance(action_type, str) or not action_type:
        return None

    raw_config = item.get("action_config") or {}
    if isinstance(raw_config, str):
        try:
            raw_config = json.loads(raw_config)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw_config, dict):
        return None

    action_id = item.get("id")
    name = item.get("name")
    return NestedAction(
        id=action_id if isinstance(action_id, str) and action_id else default_id,
        action_type=action_type,
        action_config=raw_config,
        name=name if isinstance(name, str) else "",
    )


async def run_nested(
    frame: ExecutionFrame,
    items: list[Any],
    id_prefix: str,
    checkpoint: Optional[str] = None,
) -> None:
    """
    Run a list of nested actions in order under child frames of ``frame``.

    Malformed entries are logged and skipped. The first failing action
    stops the list. With ``checkpoint`` set, cancellation is checked before
    each action and raises with that message.
    """
    for i, item in enumerate(items or []):
        if checkpoint is not None:
            frame.run.cancel_token.check(checkpoint)

        nested = parse_nested_action(item, f"{id_prefix}-{i}")
        if nested is None:
            logger.warning("nested_action_malformed", parent_action_id=frame.action_id, index=i)
            continue

        child = frame.child(nested.id, nested.action_type, nested.name)
        logger.debug("nested_action_start", action_id=child.action_id,
                     parent_action_id=child.parent_action_id, action_type=nested.action_type)
        await execute_action(child, nested.action_config)
