"""
Exception taxonomy for the sqlrs client.

Every error carries the process exit code the CLI should return for it.
"""

from typing import Optional


class SqlrsError(Exception):
    """Base class for all client errors."""

    exit_code = 1


class UsageError(SqlrsError):
    """Bad arguments or configuration, detected before any remote call."""

    exit_code = 2


class InvalidPath(UsageError):
    """A path is empty or not absolute in host form."""


class PathOutsideWorkspace(UsageError):
    """A file argument resolves outside the workspace root."""

    def __init__(self, path: str, root: str):
        super().__init__(f"File path must be within workspace root: {path}")
        self.path = path
        self.root = root


class MissingValue(UsageError):
    """A recognized flag has no value."""

    def __init__(self, flag: str):
        super().__init__(f"Missing value for {flag}")
        self.flag = flag


class InvalidSearchPath(UsageError):
    """A Liquibase search path list (or one of its elements) is empty."""


class ConflictingInstanceReference(UsageError):
    """A run step names an instance while a prepare step already hands one off."""

    def __init__(self, instance_ref: str):
        super().__init__(
            f"instance is already selected by a preceding prepare "
            f"(remove --instance {instance_ref})"
        )
        self.instance_ref = instance_ref


class StdinReadError(SqlrsError):
    """Standard input could not be captured."""


class RemoteError(SqlrsError):
    """The engine returned a non-2xx status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class JobFailed(SqlrsError):
    """A prepare job reached the terminal ``failed`` status."""

    def __init__(self, job_id: str, message: str, details: Optional[str] = None):
        text = message or "prepare job failed"
        if details:
            text = f"{text}: {details}"
        super().__init__(text)
        self.job_id = job_id
        self.message = message
        self.details = details


class WslError(SqlrsError):
    """No usable WSL distribution could be determined."""
