"""Workspace configuration.

Priority: --sandbox <name> > WORKSPACE_SANDBOX env > "local" (default)
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field

CONFIG_HOME = Path.home() / ".workspace-cache"


class E2BConfig(BaseModel):
    api_key: str | None = None
    template: str = "base"
    cwd: str = "/home/user"
    timeout: int = 300


class LocalConfig(BaseModel):
    root_dir: str | None = None
    cwd: str = "/workspace"


class SyncConfig(BaseModel):
    enabled: bool = True
    interval_sec: float = 120.0
    debounce_sec: float = 30.0
    exclude: list[str] = Field(
        default_factory=lambda: [
            "**/node_modules/**",
            "**/.venv/**",
            "**/venv/**",
            "**/__pycache__/**",
        ]
    )


class WorkspaceConfig(BaseModel):
    provider: str = "local"
    # @@@config-name-propagation - carries the config file stem through the pipeline
    name: str = "local"
    db_path: str | None = None
    e2b: E2BConfig = Field(default_factory=E2BConfig)
    local: LocalConfig = Field(default_factory=LocalConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    command_timeout: float = 120.0
    max_output_chars: int = 100_000
    read_limit: int = 500
    restore_on_reconnect: bool = False

    @property
    def workspace_root(self) -> str:
        if self.provider == "e2b":
            return self.e2b.cwd
        return self.local.cwd

    @classmethod
    def load(cls, name: str) -> WorkspaceConfig:
        if name == "local":
            return cls()

        path = CONFIG_HOME / "sandboxes" / f"{name}.json"
        if not path.exists():
            raise FileNotFoundError(f"Workspace config not found: {path}")

        data = json.loads(path.read_text())
        config = cls(**data)
        config.name = name
        return config

    def save(self, name: str) -> Path:
        path = CONFIG_HOME / "sandboxes" / f"{name}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(exclude={"name"}), indent=2))
        return path


def resolve_config_name(cli_arg: str | None) -> str:
    if cli_arg:
        return cli_arg
    return os.getenv("WORKSPACE_SANDBOX", "local")
