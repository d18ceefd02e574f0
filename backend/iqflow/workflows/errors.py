# /iqflow/workflows/errors.py

# Exceptions raised by the onboarding engine. Configuration errors are fatal
# and propagate; action errors are resolved by the action dispatcher.


class FlowError(Exception):
    """Base class for onboarding engine errors."""


class FlowConfigurationError(FlowError):
    """A flow, step, transition or trigger refers to something that does not exist."""


class UnknownActionError(FlowConfigurationError):
    """An action identifier has no registered handler."""


class ActionError(FlowError):
    """An action's own precondition or input check failed. Always fails the action."""


class RemoteCallError(FlowError):
    """A platform endpoint rejected a call. Handled per the action's failure policy."""

    def __init__(self, endpoint: str, message: str, status_code: int | None = None):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(f"{endpoint}: {message}")


class SessionBusyError(FlowError):
    """Input arrived while a previous input for the same session is still being processed."""


class SessionNotFoundError(FlowError):
    """No live onboarding session with the given id."""
