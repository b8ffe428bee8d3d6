"""Automation definition and run records."""

from datetime import datetime
from typing import Any, Optional
from dataclasses import dataclass, field
from enum import Enum


class RunStatus(Enum):
    """Automation run status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AutomationAction:
    """A single action inside a step."""
    id: str
    action_type: str
    action_config: dict[str, Any] = field(default_factory=dict)
    action_order: int = 0
    name: str = ""


@dataclass
class AutomationStep:
    """An ordered group of actions."""
    id: str
    name: str
    step_order: int = 0
    actions: list[AutomationAction] = field(default_factory=list)

    # skip_condition, run_only_condition, probability
    config: dict[str, Any] = field(default_factory=dict)

    def ordered_actions(self) -> list[AutomationAction]:
        return sorted(self.actions, key=lambda a: a.action_order)


@dataclass
class Automation:
    """An automation definition: config plus ordered steps."""
    id: str
    name: str
    description: str = ""
    project_id: str = ""
    project_name: str = ""
    user_id: str = ""

    # Raw config as stored; parsed into AutomationConfig per run
    config: Any = None

    steps: list[AutomationStep] = field(default_factory=list)

    def ordered_steps(self) -> list[AutomationStep]:
        return sorted(self.steps, key=lambda s: s.step_order)


@dataclass
class AutomationRun:
    """One execution instance of an automation."""
    id: str
    automation_id: str
    status: RunStatus = RunStatus.RUNNING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    logs: list[dict[str, Any]] = field(default_factory=list)
    output_files: list[str] = field(default_factory=list)
    error_message: str = ""
    dropped_events: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING
