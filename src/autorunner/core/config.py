"""Automation configuration models and definition loading."""

import json
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
import jsonschema
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .models import Automation, AutomationAction, AutomationStep


DEFAULT_SCREENSHOT_PATH = "screenshots/{{timestamp}}-{{loopIndex}}.png"


class Variable(BaseModel):
    """A declared automation variable."""
    key: str
    type: Literal["static", "dynamic", "environment"] = "static"
    value: str = ""
    description: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else json.dumps(v)


class MultiRunConfig(BaseModel):
    """Repeated execution settings."""
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(default=False)
    mode: Literal["sequential", "parallel"] = Field(default="sequential")
    count: int = Field(default=1, ge=1, le=1000)
    delay_ms: int = Field(default=1000, ge=0, alias="delay")

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower() or "sequential"
        return v


class ScreenshotConfig(BaseModel):
    """Automatic screenshot settings."""
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(default=True)
    on_error: bool = Field(default=True, alias="onError")
    on_success: bool = Field(default=False, alias="onSuccess")
    path: str = Field(default=DEFAULT_SCREENSHOT_PATH)


class NotificationChannelConfig(BaseModel):
    """A notification channel attached to an automation."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default="")
    type: Literal["slack", "email", "webhook"]
    on_complete: bool = Field(default=False, alias="onComplete")
    on_error: bool = Field(default=False, alias="onError")
    config: dict[str, Any] = Field(default_factory=dict)


class AutomationConfig(BaseModel):
    """Per-automation execution configuration."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    variables: list[Variable] = Field(default_factory=list)
    multirun: MultiRunConfig = Field(default_factory=MultiRunConfig)
    timeout_s: int = Field(default=300, ge=1, alias="timeout")
    retries: int = Field(default=0, ge=0, le=10)
    screenshots: ScreenshotConfig = Field(default_factory=ScreenshotConfig)
    notifications: list[NotificationChannelConfig] = Field(default_factory=list)

    @property
    def run_count(self) -> int:
        """Number of loop indices to execute."""
        return self.multirun.count if self.multirun.enabled else 1

    @property
    def run_mode(self) -> str:
        if self.multirun.enabled and self.multirun.count > 1:
            return self.multirun.mode
        return "sequential"

    def find_variable(self, key: str) -> Optional[Variable]:
        for var in self.variables:
            if var.key == key:
                return var
        return None

    @classmethod
    def parse(cls, raw: Union[None, str, dict[str, Any], "AutomationConfig"]) -> "AutomationConfig":
        """
        Parse a stored automation config.

        Accepts a dict, a JSON string, an existing instance, or nothing.
        Empty input yields defaults; malformed input raises ConfigError.
        """
        if isinstance(raw, AutomationConfig):
            return raw
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return cls()
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid automation config JSON: {e}")
        if not isinstance(raw, dict):
            raise ConfigError("Automation config must be an object")
        if not raw:
            return cls()

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid automation config: {e}")


DEFINITION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["automation", "steps"],
    "properties": {
        "automation": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "id": {"type": "string"},
                "name": {"type": "string", "minLength": 1},
                "description": {"type": "string"},
                "project_id": {"type": "string"},
                "project_name": {"type": "string"},
                "config": {"type": ["object", "string", "null"]},
            },
        },
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "actions"],
                "properties": {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "step_order": {"type": "integer"},
                    "config": {"type": ["object", "null"]},
                    "actions": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["action_type"],
                            "properties": {
                                "id": {"type": "string"},
                                "name": {"type": "string"},
                                "action_type": {"type": "string", "minLength": 1},
                                "action_config": {"type": ["object", "string", "null"]},
                                "action_order": {"type": "integer"},
                            },
                        },
                    },
                },
            },
        },
    },
}


class DefinitionLoader:
    """Loads and validates exported automation definitions (YAML/JSON)."""

    def load(self, path: Union[str, Path]) -> Automation:
        """Load an automation definition file."""
        path = Path(path)
        data = self._load_file(path)
        return self.from_dict(data, source=str(path))

    def from_dict(self, data: dict[str, Any], source: Optional[str] = None) -> Automation:
        """Build an Automation from an exported definition mapping."""
        try:
            jsonschema.validate(instance=data, schema=DEFINITION_SCHEMA)
        except jsonschema.ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigError(
                f"Invalid automation definition at {location}: {e.message}",
                config_path=source,
            )

        meta = data["automation"]
        config = meta.get("config")
        # Fail early on a bad config; the runner parses it again per run
        AutomationConfig.parse(config)

        steps = []
        for i, step_data in enumerate(data["steps"]):
            step_id = step_data.get("id") or f"step-{i + 1}"
            actions = []
            for j, action_data in enumerate(step_data["actions"]):
                actions.append(AutomationAction(
                    id=action_data.get("id") or f"{step_id}-action-{j + 1}",
                    action_type=action_data["action_type"],
                    action_config=self._parse_action_config(
                        action_data.get("action_config"), source
                    ),
                    action_order=action_data.get("action_order", j + 1),
                    name=action_data.get("name", ""),
                ))
            steps.append(AutomationStep(
                id=step_id,
                name=step_data["name"],
                step_order=step_data.get("step_order", i + 1),
                actions=actions,
                config=step_data.get("config") or {},
            ))

        return Automation(
            id=meta.get("id") or meta["name"],
            name=meta["name"],
            description=meta.get("description", ""),
            project_id=meta.get("project_id", ""),
            project_name=meta.get("project_name", ""),
            config=config,
            steps=steps,
        )

    def _parse_action_config(self, raw: Any, source: Optional[str]) -> dict[str, Any]:
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid action config JSON: {e}", config_path=source)
        if not isinstance(parsed, dict):
            raise ConfigError("Action config must be an object", config_path=source)
        return parsed

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Definition file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported definition format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError("Definition root must be an object", config_path=str(path))
        return data
