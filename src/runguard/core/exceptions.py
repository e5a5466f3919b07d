"""Custom exceptions for runguard."""

from typing import Any


class RunGuardError(Exception):
    """Base exception for all runguard errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    @property
    def kind(self) -> str:
        """Error kind as reported in run status."""
        return type(self).__name__


class ConfigError(RunGuardError):
    """Configuration-related errors."""

    pass


class ValidationError(RunGuardError):
    """Procedure definition validation errors."""

    def __init__(
        self,
        message: str,
        issues: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.issues = issues or []


class PreconditionFailure(RunGuardError):
    """A run cannot start or continue because a precondition does not hold."""

    pass


class ResourceBusy(PreconditionFailure):
    """The resource key is locked by another active run."""

    def __init__(
        self,
        message: str,
        resource_key: str | None = None,
        holder: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.resource_key = resource_key
        self.holder = holder


class ProcedureNotFound(PreconditionFailure):
    """No procedure is registered under the requested id."""

    def __init__(
        self,
        message: str,
        procedure_id: str | None = None,
        suggestions: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.procedure_id = procedure_id
        self.suggestions = suggestions or []


class ProcedureConflict(PreconditionFailure):
    """A procedure definition differs from the one already registered or in use."""

    pass


class RunNotFound(PreconditionFailure):
    """No persisted run exists for the requested id."""

    pass


class InvalidTransition(PreconditionFailure):
    """The requested operation is not allowed in the run's current state."""

    def __init__(
        self,
        message: str,
        current: str | None = None,
        requested: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.current = current
        self.requested = requested


class ActionError(RunGuardError):
    """An external action failed."""

    transient = False

    def __init__(
        self,
        message: str,
        action: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.action = action


class TransientActionError(ActionError):
    """Action failure that may succeed if attempted again."""

    transient = True


class PermanentActionError(ActionError):
    """Action failure that will not go away by retrying."""

    transient = False


class GateTimeout(RunGuardError):
    """An automatic gate was not satisfied within its time budget."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class GateRejected(RunGuardError):
    """A human confirmation token did not match the gate's confirmation text."""

    def __init__(
        self,
        message: str,
        rejections: int = 0,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.rejections = rejections


class RollbackFailure(RunGuardError):
    """A rollback step failed; the run needs manual intervention."""

    def __init__(
        self,
        message: str,
        step: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.step = step


class CheckpointError(RunGuardError):
    """Run state could not be persisted or loaded."""

    def __init__(
        self,
        message: str,
        run_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.run_id = run_id
