"""Process exit codes for the runguard CLI."""

from runguard.core.exceptions import (
    GateRejected,
    PreconditionFailure,
    ResourceBusy,
    RunGuardError,
    ValidationError,
)

EXIT_OK = 0
EXIT_FAILED = 1  # Run failed (and was rolled back), or an internal error
EXIT_ABORTED = 2
EXIT_INVALID = 3  # Bad command, unknown procedure, rejected token, refused transition
EXIT_BUSY = 4  # Resource locked by another run

_STATUS_CODES = {
    "failed": EXIT_FAILED,
    "rolling_back": EXIT_FAILED,
    "rolled_back": EXIT_FAILED,
    "aborted": EXIT_ABORTED,
}


def exit_code_for_status(status: str) -> int:
    """Exit code for a run that stopped in ``status``."""
    return _STATUS_CODES.get(status, EXIT_OK)


def exit_code_for_error(error: RunGuardError) -> int:
    """Exit code for a command that raised ``error``."""
    if isinstance(error, ResourceBusy):
        return EXIT_BUSY
    if isinstance(error, (PreconditionFailure, ValidationError, GateRejected)):
        return EXIT_INVALID
    return EXIT_FAILED
