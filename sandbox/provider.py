"""
Abstract remote environment provider interface.

All environment backends (E2B, local temp dirs, ...) implement this interface.
Methods are synchronous; async callers go through ``asyncio.to_thread``.

Failure contract:
- EnvironmentGoneError: the environment was paused, evicted or collected.
- CommandTimeoutError: run_command exceeded its timeout.
- EnvironmentUnavailableError: create() has no credentials/configuration.
- Anything else propagates as an ordinary failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ProviderSession:
    """A connected environment: its durable external ID plus the SDK object."""

    external_id: str
    connection: Any


@dataclass
class RemoteEntry:
    name: str
    path: str
    is_dir: bool


@dataclass
class ProviderExecResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class EnvironmentProvider(ABC):
    """
    Abstract interface for remote execution environments.

    Implementations:
    - E2BProvider: E2B cloud sandbox
    - LocalProvider: temp directories + subprocess
    """

    name: str
    workspace_root: str

    # ==================== Lifecycle ====================

    @abstractmethod
    def create(self) -> ProviderSession:
        """Allocate a new environment."""
        pass

    @abstractmethod
    def connect(self, external_id: str) -> ProviderSession:
        """Reconnect to an existing environment."""
        pass

    @abstractmethod
    def destroy(self, external_id: str) -> bool:
        """Destroy an environment. Returns False if it could not be destroyed."""
        pass

    # ==================== Filesystem ====================

    @abstractmethod
    def list_dir(self, connection: Any, path: str) -> list[RemoteEntry]:
        pass

    @abstractmethod
    def read_file(self, connection: Any, path: str) -> str:
        pass

    @abstractmethod
    def write_file(self, connection: Any, path: str, content: str) -> None:
        pass

    @abstractmethod
    def make_dirs(self, connection: Any, path: str) -> None:
        pass

    # ==================== Execution ====================

    @abstractmethod
    def run_command(
        self,
        connection: Any,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ProviderExecResult:
        pass
