"""Runner error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Recoverable, logged only
    MEDIUM = "medium"     # Aborts the current loop index
    HIGH = "high"         # Aborts the whole run
    CRITICAL = "critical" # Unexpected, re-raised to the caller


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, timeout - may succeed on a later run
    PERMANENT = "permanent"       # Bad definition or config - won't resolve
    VALIDATION = "validation"     # Action config failed its schema
    RESOLUTION = "resolution"     # Template lookup failure
    EXTERNAL = "external"         # Browser driver or remote API
    CANCELLED = "cancelled"       # Cooperative cancellation


class FrameworkError(Exception):
    """Base exception for all runner errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
        }


class ConfigError(FrameworkError):
    """Definition or configuration loading/validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class ActionConfigError(FrameworkError):
    """An action's config is missing a required field or has a bad value."""

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        field: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["action_type"] = action_type
        self.context["field"] = field


class ResolutionError(FrameworkError):
    """A runtime variable path could not be resolved."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.RESOLUTION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["path"] = path


class ActionError(FrameworkError):
    """Action execution error."""

    def __init__(
        self,
        message: str,
        action_id: Optional[str] = None,
        action_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.context["action_id"] = action_id
        self.context["action_type"] = action_type


class BrowserError(ActionError):
    """Browser automation error."""

    def __init__(
        self,
        message: str,
        selector: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        super().__init__(message, **kwargs)
        self.context["selector"] = selector
        self.context["url"] = url


class UnknownActionError(FrameworkError):
    """No action is registered under the requested type."""

    def __init__(self, action_type: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(f"action type {action_type} not found", **kwargs)
        self.context["action_type"] = action_type


class RunCancelledError(FrameworkError):
    """Execution stopped at a cancellation checkpoint."""

    def __init__(self, message: str = "execution cancelled", timed_out: bool = False, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.timed_out = timed_out
        self.context["timed_out"] = timed_out
