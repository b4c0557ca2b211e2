"""Command execution against live environments."""

from core.command.executor import CommandExecutor, ExecuteResponse

__all__ = ["CommandExecutor", "ExecuteResponse"]
