"""
E2B environment provider.

Implements EnvironmentProvider using E2B's cloud sandbox SDK.

Key points:
- No persistent storage of its own -- the durable file store is the backup
- Sandboxes pause or get collected on inactivity; every such failure is
  translated into EnvironmentGoneError here and nowhere else
- commands.run() raises on non-zero exit; that is reported as a result
"""

from __future__ import annotations

import logging
import os
from typing import Any, NoReturn

from e2b import (
    AuthenticationException,
    CommandExitException,
    NotFoundException,
    Sandbox,
    TimeoutException,
)

from sandbox.errors import (
    CommandTimeoutError,
    EnvironmentGoneError,
    EnvironmentUnavailableError,
    message_indicates_gone,
)
from sandbox.provider import EnvironmentProvider, ProviderExecResult, ProviderSession, RemoteEntry

logger = logging.getLogger(__name__)


def _translate(error: Exception, environment_id: str | None = None, *, path: str | None = None) -> Exception:
    """Map an SDK failure to the workspace taxonomy (or return it unchanged)."""
    message = str(error)
    if path is not None and isinstance(error, NotFoundException) and "sandbox" not in message.lower():
        # A missing file inside a live sandbox, not a missing sandbox.
        return FileNotFoundError(message)
    if isinstance(error, NotFoundException) or message_indicates_gone(message):
        return EnvironmentGoneError(message, environment_id=environment_id)
    return error


def _raise_translated(error: Exception, environment_id: str | None = None, *, path: str | None = None) -> NoReturn:
    translated = _translate(error, environment_id, path=path)
    if translated is error:
        raise error
    raise translated from error


class E2BProvider(EnvironmentProvider):
    """E2B cloud sandbox provider."""

    name = "e2b"

    def __init__(
        self,
        api_key: str | None = None,
        template: str = "base",
        default_cwd: str = "/home/user",
        timeout: int = 300,
    ):
        self.api_key = api_key or os.getenv("E2B_API_KEY")
        self.template = template
        self.workspace_root = default_cwd
        self.timeout = timeout

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise EnvironmentUnavailableError("E2B_API_KEY environment variable is not set")
        return self.api_key

    # ==================== Lifecycle ====================

    def create(self) -> ProviderSession:
        api_key = self._require_api_key()
        try:
            sandbox = Sandbox.create(
                template=self.template,
                timeout=self.timeout,
                api_key=api_key,
            )
        except AuthenticationException as e:
            raise EnvironmentUnavailableError(str(e)) from e
        return ProviderSession(external_id=sandbox.sandbox_id, connection=sandbox)

    def connect(self, external_id: str) -> ProviderSession:
        api_key = self._require_api_key()
        try:
            sandbox = Sandbox.connect(external_id, timeout=self.timeout, api_key=api_key)
        except AuthenticationException as e:
            raise EnvironmentUnavailableError(str(e)) from e
        except Exception as e:
            _raise_translated(e, external_id)
        return ProviderSession(external_id=external_id, connection=sandbox)

    def destroy(self, external_id: str) -> bool:
        try:
            return bool(Sandbox.kill(external_id, api_key=self._require_api_key()))
        except EnvironmentUnavailableError:
            raise
        except Exception as e:
            logger.warning("Failed to kill sandbox %s: %s", external_id, e)
            return False

    # ==================== Filesystem ====================

    def list_dir(self, connection: Any, path: str) -> list[RemoteEntry]:
        try:
            entries = connection.files.list(path)
        except Exception as e:
            _raise_translated(e, connection.sandbox_id, path=path)
        base = path.rstrip("/")
        return [
            RemoteEntry(
                name=entry.name,
                path=getattr(entry, "path", None) or f"{base}/{entry.name}",
                is_dir=bool(entry.type and entry.type.value == "dir"),
            )
            for entry in entries
        ]

    def read_file(self, connection: Any, path: str) -> str:
        try:
            return connection.files.read(path)
        except Exception as e:
            _raise_translated(e, connection.sandbox_id, path=path)

    def write_file(self, connection: Any, path: str, content: str) -> None:
        try:
            connection.files.write(path, content)
        except Exception as e:
            _raise_translated(e, connection.sandbox_id)

    def make_dirs(self, connection: Any, path: str) -> None:
        try:
            connection.files.make_dir(path)
        except Exception as e:
            _raise_translated(e, connection.sandbox_id)

    # ==================== Execution ====================

    def run_command(
        self,
        connection: Any,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ProviderExecResult:
        try:
            result = connection.commands.run(
                command,
                cwd=cwd or self.workspace_root,
                timeout=timeout,
            )
        except CommandExitException as e:
            return ProviderExecResult(stdout=e.stdout or "", stderr=e.stderr or "", exit_code=e.exit_code)
        except TimeoutException as e:
            # @@@timeout-vs-gone - E2B reports a dead sandbox as a timeout ("probably not running").
            if message_indicates_gone(str(e)):
                raise EnvironmentGoneError(str(e), environment_id=connection.sandbox_id) from e
            raise CommandTimeoutError(timeout or 0) from e
        except Exception as e:
            _raise_translated(e, connection.sandbox_id)
        return ProviderExecResult(
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            exit_code=result.exit_code,
        )
