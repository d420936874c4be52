"""Error taxonomy for the plugin runtime.

Infrastructure errors (duplicate registration, circular dependencies, invalid
state transitions) are raised to the caller. Failures inside a plugin's own
code are wrapped in ``LifecycleHookFailed``, recorded on the registry and never
propagate to sibling plugins.
"""
from typing import Any, Iterable, Optional


class PluginError(Exception):
    """Base class for all plugin runtime errors."""


class ManifestInvalid(PluginError):
    """A discovered plugin manifest is missing fields or malformed."""

    def __init__(self, reason: str, plugin_id: Optional[str] = None):
        self.reason = reason
        self.plugin_id = plugin_id
        prefix = f"Invalid manifest for {plugin_id}" if plugin_id else "Invalid manifest"
        super().__init__(f"{prefix}: {reason}")


class DuplicateModule(PluginError):
    def __init__(self, plugin_id: str):
        self.plugin_id = plugin_id
        super().__init__(f"Plugin '{plugin_id}' is already registered")


class PluginNotFound(PluginError):
    def __init__(self, plugin_id: str):
        self.plugin_id = plugin_id
        super().__init__(f"Plugin not found: {plugin_id}")


class CircularDependency(PluginError):
    def __init__(self, plugin_ids: Iterable[str]):
        self.plugin_ids = list(plugin_ids)
        super().__init__(
            f"Circular dependency detected in plugins: {', '.join(self.plugin_ids)}"
        )


class DependencyUnmet(PluginError):
    def __init__(self, plugin_id: str, missing: Iterable[str]):
        self.plugin_id = plugin_id
        self.missing = list(missing)
        super().__init__(
            f"Cannot start {plugin_id}: missing dependencies {', '.join(self.missing)}"
        )


class ActiveDependents(PluginError):
    def __init__(self, plugin_id: str, dependents: Iterable[str]):
        self.plugin_id = plugin_id
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot stop {plugin_id}: required by {', '.join(self.dependents)}"
        )


class ConflictDetected(PluginError):
    def __init__(self, plugin_id: str, conflicting: Iterable[str]):
        self.plugin_id = plugin_id
        self.conflicting = list(conflicting)
        super().__init__(
            f"Cannot start {plugin_id}: conflicts with {', '.join(self.conflicting)}"
        )


class InvalidStateTransition(PluginError):
    def __init__(self, plugin_id: str, state: Any, operation: str, expected: Iterable[Any] = ()):
        self.plugin_id = plugin_id
        self.state = state
        self.operation = operation
        self.expected = list(expected)
        expected_text = " or ".join(str(s) for s in self.expected) or "a valid state"
        super().__init__(
            f"Plugin {plugin_id} must be in {expected_text} state to {operation} "
            f"(current: {state})"
        )


class LifecycleHookFailed(PluginError):
    """A plugin's own init/start/stop/destroy hook raised."""

    def __init__(self, plugin_id: str, phase: str, cause: BaseException):
        self.plugin_id = plugin_id
        self.phase = phase
        self.cause = cause
        super().__init__(f"Plugin {plugin_id} failed during {phase}: {cause}")


class ValidationFailed(PluginError):
    def __init__(self, plugin_id: str, key: str, value: Any, reason: str = ""):
        self.plugin_id = plugin_id
        self.key = key
        self.value = value
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Invalid value for {plugin_id}.{key}: {value!r}{detail}")


class RequestTimeout(PluginError):
    def __init__(self, action: str, timeout: float):
        self.action = action
        self.timeout = timeout
        super().__init__(f"Request timeout: {action} (after {timeout}s)")


class BrokerDestroyed(PluginError):
    def __init__(self, message: str = "IPC destroyed - context ending"):
        super().__init__(message)


class TransportError(PluginError):
    """The message transport could not deliver an envelope."""


class RequestFailed(PluginError):
    """The remote handler answered a request with a failure response."""

    def __init__(self, action: str, message: str):
        self.action = action
        self.message = message
        super().__init__(f"Request '{action}' failed: {message}")
