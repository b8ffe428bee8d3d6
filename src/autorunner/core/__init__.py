"""Core runner components."""

from .config import AutomationConfig, DefinitionLoader
from .state import RunStateStore
from .models import Automation, AutomationAction, AutomationRun, AutomationStep, RunStatus
from .errors import (
    FrameworkError,
    ConfigError,
    ActionConfigError,
    ActionError,
    BrowserError,
    ResolutionError,
    RunCancelledError,
    UnknownActionError,
)

__all__ = [
    "AutomationConfig",
    "DefinitionLoader",
    "RunStateStore",
    "Automation",
    "AutomationAction",
    "AutomationRun",
    "AutomationStep",
    "RunStatus",
    "FrameworkError",
    "ConfigError",
    "ActionConfigError",
    "ActionError",
    "BrowserError",
    "ResolutionError",
    "RunCancelledError",
    "UnknownActionError",
]
