"""Store-backed file operations."""

from core.filesystem.glob import GlobMatcher, glob_to_regex
from core.filesystem.operations import FileOperations
from core.filesystem.paths import normalize_path
from core.filesystem.types import (
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)

__all__ = [
    "EditResult",
    "FileDownloadResponse",
    "FileInfo",
    "FileOperations",
    "FileUploadResponse",
    "GlobMatcher",
    "GrepMatch",
    "WriteResult",
    "glob_to_regex",
    "normalize_path",
]
