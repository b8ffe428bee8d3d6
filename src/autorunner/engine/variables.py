"""
Variable resolution - {{token}} interpolation over a VariableContext.

Token precedence:
    1. Reserved names (loopIndex, localLoopIndex, timestamp, runId, ...)
    2. runtime.<path>   nested lookup in runtime/global vars
    3. faker.<method>   generated fake data
    4. function.<name>  generator functions
    5. static vars
    6. declared automation variables (static, dynamic, environment)
    7. anything else is left untouched
"""

import json
import random
import re
import time
from typing import Any, Collection, Optional

import structlog
from faker import Faker

from ..core.config import AutomationConfig
from ..core.errors import ConfigError, ResolutionError
from .context import VariableContext

logger = structlog.get_logger()

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
INDEX_PATTERN = re.compile(r"^([^\[\]]*)\[([^\[\]]*)\]$")

MAX_RESOLUTION_DEPTH = 10


def stringify(value: Any) -> str:
    """Render a runtime value for substitution into a template."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def resolve_nested_path(path: str, ctx: VariableContext) -> Any:
    """
    Resolve a dotted path such as ``options[1].name`` against runtime vars.

    The first segment names a variable in ``runtime_vars`` (then
    ``global_vars``). Later segments are property names, ``name[i]`` or
    ``[i]``. Raises ResolutionError with a distinct message per failure.
    """
    segments = path.split(".")
    base = segments[0]
    base_name, base_index = base, None
    match = INDEX_PATTERN.match(base)
    if match:
        base_name, base_index = match.group(1), match.group(2)

    if base_name in ctx.runtime_vars:
        current = ctx.runtime_vars[base_name]
    elif base_name in ctx.global_vars:
        current = ctx.global_vars[base_name]
    else:
        raise ResolutionError(f"runtime variable '{base_name}' not found", path=path)

    if base_index is not None:
        current = _index_into(current, base_name, base_index, path)

    return walk_path(current, segments[1:], path)


def extract_json_path(data: Any, path: str) -> Any:
    """Extract a value from decoded JSON with a dotted path like ``data.items[0].id``."""
    if not path:
        raise ResolutionError("empty path", path=path)
    return walk_path(data, path.split("."), path)


def walk_path(current: Any, segments: list[str], path: str) -> Any:
    """Follow property and index segments from ``current``."""
    for segment in segments:
        if current is None:
            raise ResolutionError(
                f"null value encountered at path segment '{segment}'", path=path
            )

        match = INDEX_PATTERN.match(segment)
        if match:
            name, index = match.group(1), match.group(2)
            if name:
                if not isinstance(current, dict):
                    raise ResolutionError(
                        f"cannot access property '{name}' on non-object", path=path
                    )
                if name not in current:
                    raise ResolutionError(f"array '{name}' not found", path=path)
                current = current[name]
            current = _index_into(current, name, index, path)
            continue

        if not isinstance(current, dict):
            raise ResolutionError(
                f"cannot access property '{segment}' on non-object", path=path
            )
        if segment not in current:
            raise ResolutionError(f"property '{segment}' not found", path=path)
        current = current[segment]

    return current


def _index_into(value: Any, name: str, raw_index: str, path: str) -> Any:
    if value is None:
        raise ResolutionError(
            f"null value encountered at path segment '{name}[{raw_index}]'", path=path
        )
    if not isinstance(value, list):
        raise ResolutionError(f"'{name}' is not an array", path=path)
    try:
        index = int(raw_index.strip())
    except ValueError:
        raise ResolutionError(f"invalid array index '{raw_index}'", path=path)
    if index < 0 or index >= len(value):
        raise ResolutionError(
            f"array index {index} out of bounds for array '{name}'", path=path
        )
    return value[index]


class VariableResolver:
    """Resolves {{...}} tokens in strings and action config trees."""

    def __init__(self, faker: Optional[Faker] = None, rng: Optional[random.Random] = None):
        self.faker = faker or Faker()
        self.rng = rng or random.Random()

    def resolve_string(
        self,
        text: str,
        ctx: VariableContext,
        config: Optional[AutomationConfig] = None,
        _depth: int = 0,
    ) -> str:
        """Replace every token in ``text``. Unresolvable tokens are kept verbatim."""
        if "{{" not in text:
            return text

        def replace(match: re.Match) -> str:
            resolved = self._resolve_token(match.group(1).strip(), ctx, config, _depth)
            return match.group(0) if resolved is None else resolved

        return TOKEN_PATTERN.sub(replace, text)

    def resolve_config(
        self,
        tree: Any,
        ctx: VariableContext,
        config: Optional[AutomationConfig] = None,
        deferred: Collection[str] = (),
    ) -> Any:
        """
        Resolve every string leaf in a dict/list tree, returning a new tree.

        Top-level keys named in ``deferred`` are copied unresolved. An entry
        written ``outer[].inner`` defers ``inner`` inside each object of the
        ``outer`` list. Deeper keys are always resolved.
        """
        if isinstance(tree, str):
            return self.resolve_string(tree, ctx, config)
        if isinstance(tree, dict):
            if deferred:
                return self._resolve_deferring(tree, ctx, config, deferred)
            return {key: self.resolve_config(value, ctx, config) for key, value in tree.items()}
        if isinstance(tree, list):
            return [self.resolve_config(item, ctx, config) for item in tree]
        return tree

    def _resolve_deferring(
        self,
        tree: dict[str, Any],
        ctx: VariableContext,
        config: Optional[AutomationConfig],
        deferred: Collection[str],
    ) -> dict[str, Any]:
        skipped = set()
        inner: dict[str, list[str]] = {}
        for entry in deferred:
            outer, sep, rest = entry.partition("[].")
            if sep:
                inner.setdefault(outer, []).append(rest)
            else:
                skipped.add(entry)

        resolved = {}
        for key, value in tree.items():
            if key in skipped:
                resolved[key] = value
            elif key in inner and isinstance(value, list):
                resolved[key] = [
                    self.resolve_config(item, ctx, config, inner[key]) for item in value
                ]
            else:
                resolved[key] = self.resolve_config(value, ctx, config)
        return resolved

    def _resolve_token(
        self,
        name: str,
        ctx: VariableContext,
        config: Optional[AutomationConfig],
        depth: int,
    ) -> Optional[str]:
        reserved = self._reserved(name, ctx)
        if reserved is not None:
            return reserved

        if name.startswith("runtime."):
            path = name[len("runtime."):]
            try:
                return stringify(resolve_nested_path(path, ctx))
            except ResolutionError as e:
                logger.warning("runtime_variable_unresolved", path=path, error=e.message)
                return ""

        if name.startswith("faker."):
            return self.fake(name[len("faker."):])

        if name.startswith("function."):
            return self.call_function(name[len("function."):])

        if name in ctx.static_vars:
            return ctx.static_vars[name]

        if config is not None:
            var = config.find_variable(name)
            if var is not None:
                return self._resolve_declared(var, ctx, config, depth)

        logger.warning("variable_not_found", name=name)
        return None

    def _reserved(self, name: str, ctx: VariableContext) -> Optional[str]:
        if name == "loopIndex":
            return str(ctx.loop_index)
        if name == "localLoopIndex":
            return str(ctx.local_loop_index)
        if name == "timestamp":
            return ctx.timestamp
        if name == "runId":
            return ctx.run_id
        if name == "userId":
            return ctx.user_id
        if name == "projectId":
            return ctx.project_id
        if name == "automationId":
            return ctx.automation_id
        return None

    def _resolve_declared(self, var, ctx, config, depth) -> str:
        if var.type == "static":
            return var.value

        if var.type == "dynamic":
            value = var.value.strip()
            if value.startswith("{{faker.") and value.endswith("}}"):
                return self.fake(value[len("{{faker."):-2].strip())
            return var.value

        # environment: the value is itself a template
        if depth >= MAX_RESOLUTION_DEPTH:
            raise ConfigError(
                f"variable '{var.key}' exceeds maximum resolution depth "
                f"({MAX_RESOLUTION_DEPTH}); check for a reference cycle"
            )
        return self.resolve_string(var.value, ctx, config, _depth=depth + 1)

    def fake(self, method: str) -> str:
        """Generate a fake value of the named kind."""
        f = self.faker
        generators = {
            "name": f.name,
            "firstName": f.first_name,
            "lastName": f.last_name,
            "email": f.email,
            "phone": f.phone_number,
            "address": lambda: f.address().replace("\n", ", "),
            "company": f.company,
            "username": f.user_name,
            "password": lambda: f.password(length=12),
            "uuid": f.uuid4,
            "number": lambda: f.random_int(min=1, max=1000),
            "date": f.date,
        }
        generator = generators.get(method)
        if generator is None:
            logger.warning("unknown_faker_method", method=method)
            return "{{faker." + method + "}}"
        return str(generator())

    def call_function(self, name: str) -> str:
        """Evaluate a generator function such as ``randomNumber.6``."""
        if name.startswith("randomNumber."):
            digits = name[len("randomNumber."):]
            if digits.isdigit() and 1 <= int(digits) <= 18:
                n = int(digits)
                return str(self.rng.randint(int("1" * n), int("9" * n)))
        elif name == "unixTimestamp":
            return str(int(time.time()))

        logger.warning("unknown_function", name=name)
        return "{{function." + name + "}}"
