"""Result types returned by workspace file operations.

Tool-facing results carry errors as values so the agent loop can show them
as a tool message instead of crashing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

FileOperationError = Literal["file_not_found", "permission_denied", "is_directory", "invalid_path"]


@dataclass
class FileInfo:
    """Single listing / glob entry. Directories carry no size."""

    path: str
    is_dir: bool
    size: int | None = None


@dataclass
class GrepMatch:
    path: str
    line: int
    text: str


@dataclass
class WriteResult:
    path: str | None = None
    error: str | None = None
    # Advisory: whether a live environment also received the write.
    mirrored: bool = False


@dataclass
class EditResult:
    path: str | None = None
    error: str | None = None
    occurrences: int | None = None
    mirrored: bool = False


@dataclass
class FileUploadResponse:
    path: str
    error: FileOperationError | None = None


@dataclass
class FileDownloadResponse:
    path: str
    content: bytes | None = None
    error: FileOperationError | None = None
