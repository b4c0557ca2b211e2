"""Command executor: the only workspace operation that needs a live environment.

The environment is acquired lazily (restored from the durable store when it
has to be created). A gone signal during the run triggers exactly one
recreate-restore-retry; a second failure is reported, never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sandbox.errors import CommandTimeoutError, EnvironmentGoneError, EnvironmentUnavailableError
from sandbox.manager import EnvironmentHandle, EnvironmentManager
from sandbox.provider import ProviderExecResult
from storage.file_store import DurableFileStore

logger = logging.getLogger(__name__)

NO_OUTPUT = "<no output>"
STDERR_PREFIX = "[stderr] "
# Extra wall-clock allowance over the provider-side timeout.
TIMEOUT_GRACE_SEC = 5.0


@dataclass
class ExecuteResponse:
    output: str
    exit_code: int
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _error(message: str) -> ExecuteResponse:
    return ExecuteResponse(output=message, exit_code=1)


class CommandExecutor:
    def __init__(
        self,
        manager: EnvironmentManager,
        store: DurableFileStore,
        *,
        timeout: float = 120.0,
        max_output_chars: int = 100_000,
        cwd: str | None = None,
        on_complete: Callable[[str], None] | None = None,
    ):
        self.manager = manager
        self.store = store
        self.timeout = timeout
        self.max_output_chars = max_output_chars
        self.cwd = cwd
        self._on_complete = on_complete

    async def execute(self, agent_id: str, command: str, timeout: float | None = None) -> ExecuteResponse:
        if not command or not isinstance(command, str) or not command.strip():
            return _error("Error: Shell tool expects a non-empty command string.")
        timeout = timeout or self.timeout

        try:
            handle = await self._acquire(agent_id)
        except EnvironmentUnavailableError as e:
            return _error(f"Error: Environment unavailable: {e}")
        except Exception as e:
            logger.error("Failed to acquire environment for agent %s: %s", agent_id, e)
            return _error(f"Error executing command: {e}")

        try:
            result = await self._run(handle, command, timeout)
        except EnvironmentGoneError as e:
            logger.info("Environment %s lost during command for agent %s: %s", handle.external_id, agent_id, e)
            return await self._recreate_and_retry(agent_id, handle, command, timeout)
        except CommandTimeoutError as e:
            return _error(f"Error: {e}")
        except Exception as e:
            return _error(f"Error executing command: {e}")

        return self._complete(agent_id, result)

    async def _acquire(self, agent_id: str) -> EnvironmentHandle:
        handle = self.manager.get_active(agent_id)
        if handle is not None:
            return handle
        return await self.manager.acquire(agent_id, self.store.list_all(agent_id))

    async def _recreate_and_retry(
        self,
        agent_id: str,
        failed: EnvironmentHandle,
        command: str,
        timeout: float,
    ) -> ExecuteResponse:
        self.manager.mark_stale(agent_id, failed)
        try:
            # @@@single-retry - one recreation per call; a permanently broken provider must not loop.
            handle = await self.manager.acquire(agent_id, self.store.list_all(agent_id), force_new=True)
            logger.info("Recreated environment %s for agent %s, retrying command", handle.external_id, agent_id)
        except Exception as e:
            return _error(f"Error: Environment stopped and reconnection failed: {e}")

        try:
            result = await self._run(handle, command, timeout)
        except EnvironmentGoneError as e:
            self.manager.mark_stale(agent_id, handle)
            logger.error("Environment for agent %s lost again after recreation: %s", agent_id, e)
            return _error(f"Error: Environment stopped and reconnection failed: {e}")
        except CommandTimeoutError as e:
            return _error(f"Error: {e}")
        except Exception as e:
            return _error(f"Error executing command: {e}")
        return self._complete(agent_id, result)

    async def _run(self, handle: EnvironmentHandle, command: str, timeout: float) -> ProviderExecResult:
        provider = self.manager.provider
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    provider.run_command,
                    handle.connection,
                    command,
                    self.cwd or provider.workspace_root,
                    timeout,
                ),
                timeout + TIMEOUT_GRACE_SEC,
            )
        except TimeoutError as e:
            raise CommandTimeoutError(timeout) from e

    def _complete(self, agent_id: str, result: ProviderExecResult) -> ExecuteResponse:
        if self._on_complete is not None:
            self._on_complete(agent_id)
        return self._format(result)

    def _format(self, result: ProviderExecResult) -> ExecuteResponse:
        output = result.stdout or ""
        if result.stderr:
            stderr_lines = "\n".join(
                f"{STDERR_PREFIX}{line}" for line in result.stderr.split("\n") if line
            )
            if stderr_lines:
                output += ("\n" if output else "") + stderr_lines

        if not output.strip():
            output = NO_OUTPUT

        truncated = False
        if len(output) > self.max_output_chars:
            total = len(output)
            output = output[: self.max_output_chars] + f"\n... [output truncated, {total} chars total]"
            truncated = True

        return ExecuteResponse(output=output, exit_code=result.exit_code, truncated=truncated)
