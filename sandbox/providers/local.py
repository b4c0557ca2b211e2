"""
Local environment provider.

Each environment is a directory under ``root_dir``; the environment's
absolute paths map onto that directory. Commands run through the host shell
with the mapped workspace as cwd, so there is no isolation -- this provider
is for development and tests.

The directory name is the external ID, so reconnection after a process
restart works as long as the directory still exists.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path

from sandbox.errors import CommandTimeoutError, EnvironmentGoneError
from sandbox.provider import EnvironmentProvider, ProviderExecResult, ProviderSession, RemoteEntry


class LocalProvider(EnvironmentProvider):
    """Temp-directory environments."""

    name = "local"

    def __init__(self, root_dir: str | Path | None = None, workspace_root: str = "/workspace"):
        self.root_dir = Path(root_dir) if root_dir else Path(tempfile.gettempdir()) / "workspace-envs"
        self.workspace_root = workspace_root

    def _env_dir(self, external_id: str) -> Path:
        return self.root_dir / external_id

    def _resolve(self, connection: Path, path: str) -> Path:
        if not connection.is_dir():
            raise EnvironmentGoneError(f"Environment {connection.name} does not exist", environment_id=connection.name)
        full = (connection / path.lstrip("/")).resolve()
        if full != connection.resolve() and connection.resolve() not in full.parents:
            raise ValueError(f"Path '{path}' escapes environment")
        return full

    # ==================== Lifecycle ====================

    def create(self) -> ProviderSession:
        external_id = f"local-{uuid.uuid4().hex[:12]}"
        env_dir = self._env_dir(external_id)
        (env_dir / self.workspace_root.lstrip("/")).mkdir(parents=True, exist_ok=True)
        return ProviderSession(external_id=external_id, connection=env_dir)

    def connect(self, external_id: str) -> ProviderSession:
        env_dir = self._env_dir(external_id)
        if not env_dir.is_dir():
            raise EnvironmentGoneError(f"Environment {external_id} does not exist", environment_id=external_id)
        return ProviderSession(external_id=external_id, connection=env_dir)

    def destroy(self, external_id: str) -> bool:
        env_dir = self._env_dir(external_id)
        if not env_dir.exists():
            return False
        shutil.rmtree(env_dir)
        return True

    # ==================== Filesystem ====================

    def list_dir(self, connection: Path, path: str) -> list[RemoteEntry]:
        full = self._resolve(connection, path)
        base = "/" + path.strip("/") if path.strip("/") else ""
        return [
            RemoteEntry(name=child.name, path=f"{base}/{child.name}", is_dir=child.is_dir())
            for child in sorted(full.iterdir())
        ]

    def read_file(self, connection: Path, path: str) -> str:
        return self._resolve(connection, path).read_text(encoding="utf-8")

    def write_file(self, connection: Path, path: str, content: str) -> None:
        full = self._resolve(connection, path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content, encoding="utf-8")

    def make_dirs(self, connection: Path, path: str) -> None:
        self._resolve(connection, path).mkdir(parents=True, exist_ok=True)

    # ==================== Execution ====================

    def run_command(
        self,
        connection: Path,
        command: str,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> ProviderExecResult:
        work_dir = self._resolve(connection, cwd or self.workspace_root)
        work_dir.mkdir(parents=True, exist_ok=True)
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=work_dir,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeoutError(timeout or 0) from e
        return ProviderExecResult(stdout=proc.stdout, stderr=proc.stderr, exit_code=proc.returncode)
