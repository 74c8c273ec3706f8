"""Exception hierarchy for adeval.

Modules raise these; only the CLI turns them into messages and exit codes.
"""


class AdevalError(Exception):
    """Base class for all adeval failures."""

    pass


class PreconditionError(AdevalError):
    """Raised when required tooling is missing or the Azure CLI is not logged in."""

    pass


class UsageError(AdevalError):
    """Raised when the caller supplied missing or inconsistent arguments."""

    pass


class ConfigError(AdevalError):
    """Raised when configuration files cannot be read or written."""

    pass


class CommandError(AdevalError):
    """Raised when an Azure CLI command fails or returns unparseable output.

    Attributes:
        command: Masked command line that was executed
        returncode: Process exit code (127 when the executable is missing)
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(self, message: str, command: str = "", returncode: int = 1,
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class PollTimeoutError(AdevalError):
    """Raised when a wait loop exhausts its cycle budget."""

    def __init__(self, phase: str, budget_seconds: float):
        super().__init__(
            f"Timeout threshold expired - {phase} did not complete within "
            f"{_format_budget(budget_seconds)}"
        )
        self.phase = phase
        self.budget_seconds = budget_seconds


class VerificationError(AdevalError):
    """Raised when encryption metadata or VM state contradicts the extension status."""

    pass


class RunCancelledError(AdevalError):
    """Raised when the operator cancels a run while it waits on Azure."""

    pass


def _format_budget(seconds: float) -> str:
    if seconds >= 3600:
        hours = seconds / 3600
        return f"{hours:g} hours"
    if seconds >= 60:
        return f"{seconds / 60:g} minutes"
    return f"{seconds:g} seconds"


__all__ = [
    "AdevalError",
    "CommandError",
    "ConfigError",
    "PollTimeoutError",
    "PreconditionError",
    "RunCancelledError",
    "UsageError",
    "VerificationError",
]
