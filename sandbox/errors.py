"""Workspace error taxonomy.

Providers translate third-party failures into these types; nothing outside
``sandbox/providers`` looks at error wording.
"""

from __future__ import annotations

# Substrings remote SDKs use when an environment was paused, evicted or collected.
GONE_MARKERS: tuple[str, ...] = (
    "paused sandbox",
    "sandbox not found",
    "sandbox_not_found",
    "not found",
    "does not exist",
    "not running",
)


class WorkspaceError(Exception):
    """Base class for workspace errors."""


class NotFoundError(WorkspaceError):
    def __init__(self, path: str):
        super().__init__(f"File '{path}' not found")
        self.path = path


class ReplaceNotFoundError(WorkspaceError):
    message = "String not found in file"

    def __init__(self, path: str):
        super().__init__(self.message)
        self.path = path


class InvalidPathError(WorkspaceError):
    pass


class EnvironmentUnavailableError(WorkspaceError):
    """No credentials or configuration to create an environment."""


class EnvironmentGoneError(WorkspaceError):
    """The live environment no longer exists and must be recreated."""

    def __init__(self, message: str = "Environment is gone", environment_id: str | None = None):
        super().__init__(message)
        self.environment_id = environment_id


class CommandTimeoutError(WorkspaceError):
    def __init__(self, timeout: float, message: str | None = None):
        super().__init__(message or f"Command timed out after {timeout:g}s")
        self.timeout = timeout


class PartialBatchFailure(WorkspaceError):
    """Raised by callers that want batch transfers to be all-or-nothing."""

    def __init__(self, failures: dict[str, str]):
        summary = ", ".join(f"{path}: {code}" for path, code in sorted(failures.items()))
        super().__init__(f"{len(failures)} item(s) failed: {summary}")
        self.failures = failures


def message_indicates_gone(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in GONE_MARKERS)
