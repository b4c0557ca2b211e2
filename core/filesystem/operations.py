"""
Workspace file operations: served entirely from the durable store.

Operations:
- list / read / glob / search: pure store queries, never touch an environment
- write / edit / upload_files: two-phase
    1) durable write (the commit point; its success is the operation's success)
    2) advisory mirror into the live environment, if one is already active
- download_files: batch read with per-item error codes

A failed mirror is logged, reported as ``mirrored=False`` and recorded on the
manager as unsynced; it never turns a committed write into a failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING

from core.filesystem.glob import GlobMatcher
from core.filesystem.paths import dir_prefix, is_under, normalize_path, parent_dir
from core.filesystem.types import (
    EditResult,
    FileDownloadResponse,
    FileInfo,
    FileUploadResponse,
    GrepMatch,
    WriteResult,
)
from sandbox.errors import (
    EnvironmentGoneError,
    InvalidPathError,
    NotFoundError,
    PartialBatchFailure,
    ReplaceNotFoundError,
)
from storage.file_store import DurableFileStore
from storage.models import FileRecord

if TYPE_CHECKING:
    from sandbox.manager import EnvironmentManager

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 500


class FileOperations:
    """File operations for one agent.

    Args:
        agent_id: Agent whose files this facade serves
        store: DurableFileStore (source of truth)
        manager: EnvironmentManager; finds an already-live handle and records missed mirrors
        root: Directory relative paths resolve against
        read_limit: Default number of lines returned by read()
        on_write: Called with agent_id after a successful mirror
    """

    def __init__(
        self,
        agent_id: str,
        store: DurableFileStore,
        manager: EnvironmentManager | None = None,
        *,
        root: str = "/",
        read_limit: int = DEFAULT_READ_LIMIT,
        on_write: Callable[[str], None] | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.store = store
        self.manager = manager
        self.root = normalize_path(root)
        self.read_limit = read_limit
        self._on_write = on_write

    def _resolve(self, path: str | None) -> str:
        return normalize_path(self.root if path is None else path, self.root)

    def _is_directory(self, path: str) -> bool:
        prefix = dir_prefix(path)
        return any(p.startswith(prefix) for p in self.store.paths(self.agent_id))

    def _file_ancestor(self, path: str) -> str | None:
        """Nearest ancestor of *path* that is stored as a file."""
        parent = parent_dir(path)
        while parent != "/":
            if self.store.get(self.agent_id, parent) is not None:
                return parent
            parent = parent_dir(parent)
        return None

    def _require(self, path: str) -> FileRecord:
        record = self.store.get(self.agent_id, path)
        if record is None:
            raise NotFoundError(path)
        return record

    # ==================== Read-only views ====================

    def list(self, directory: str | None = None) -> list[FileInfo]:
        """Direct children of *directory*; subdirectories are synthesized from paths."""
        directory = self._resolve(directory)
        prefix = dir_prefix(directory)
        children: dict[str, FileInfo] = {}
        for record in self.store.list_all(self.agent_id):
            if not record.path.startswith(prefix):
                continue
            head, sep, _ = record.path[len(prefix):].partition("/")
            if sep:
                children[head] = FileInfo(path=prefix + head, is_dir=True)
            else:
                children.setdefault(head, FileInfo(path=record.path, is_dir=False, size=record.size))
        return [children[name] for name in sorted(children)]

    def read(self, path: str, offset: int = 0, limit: int | None = None) -> str:
        """Numbered lines ``[offset, offset+limit)`` as ``"{n}\\t{line}"``, 1-based.

        Errors come back as text, never as exceptions.
        """
        try:
            path = self._resolve(path)
        except InvalidPathError as e:
            return f"Error: {e}"
        try:
            record = self._require(path)
        except NotFoundError as e:
            if self._is_directory(path):
                return f"Error: '{path}' is a directory"
            return f"Error: {e}"

        offset = max(offset or 0, 0)
        limit = limit if limit and limit > 0 else self.read_limit
        lines = record.content.split("\n")
        if offset and offset >= len(lines):
            return f"Error: Line offset {offset} exceeds file length ({len(lines)} lines)"
        selected = lines[offset : offset + limit]
        return "\n".join(f"{offset + i + 1}\t{line}" for i, line in enumerate(selected))

    def glob(self, pattern: str, base_path: str | None = None) -> list[FileInfo] | str:
        if not pattern:
            return []
        try:
            base = self._resolve(base_path)
        except InvalidPathError as e:
            return f"Error: {e}"
        matcher = GlobMatcher(pattern)
        return [
            FileInfo(path=record.path, is_dir=False, size=record.size)
            for record in self.store.list_all(self.agent_id)
            if is_under(record.path, base) and matcher.matches(record.path, base)
        ]

    def search(self, pattern: str, path: str | None = None, glob: str | None = None) -> list[GrepMatch] | str:
        """Regex search over stored content.

        An invalid regex falls back to a literal match of the pattern text.
        """
        if not pattern:
            return "Error: Search pattern must not be empty"
        try:
            regex = re.compile(pattern)
        except re.error:
            regex = re.compile(re.escape(pattern))
        try:
            target = self._resolve(path)
        except InvalidPathError as e:
            return f"Error: {e}"

        records = self.store.list_all(self.agent_id)
        exact = [r for r in records if r.path == target]
        base = parent_dir(target) if exact else target
        candidates = exact or [r for r in records if is_under(r.path, target)]
        matcher = GlobMatcher(glob) if glob else None

        matches: list[GrepMatch] = []
        for record in candidates:
            if matcher is not None and not matcher.matches(record.path, base, basename_anywhere=True):
                continue
            for number, line in enumerate(record.content.split("\n"), start=1):
                if regex.search(line):
                    matches.append(GrepMatch(path=record.path, line=number, text=line))
        return matches

    # ==================== Writes ====================

    async def write(self, path: str, content: str) -> WriteResult:
        try:
            path = self._resolve(path)
        except InvalidPathError as e:
            return WriteResult(error=f"Error: {e}")
        if not isinstance(content, str):
            return WriteResult(error="Error: File content must be a string")
        if self._is_directory(path):
            return WriteResult(error=f"Error: '{path}' is a directory")
        ancestor = self._file_ancestor(path)
        if ancestor is not None:
            return WriteResult(error=f"Error: '{ancestor}' is a file, not a directory")

        record = self.store.put(self.agent_id, path, content)
        mirrored = await self._mirror(record)
        return WriteResult(path=path, mirrored=mirrored)

    async def edit(
        self,
        path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
    ) -> EditResult:
        try:
            path = self._resolve(path)
        except InvalidPathError as e:
            return EditResult(error=f"Error: {e}")
        if not old_string:
            return EditResult(error="Error: old_string must not be empty")
        if old_string == new_string:
            return EditResult(error="Error: old_string and new_string are identical (no-op edit)")
        try:
            new_content, occurrences = self._replace(path, old_string, new_string, replace_all)
        except NotFoundError as e:
            return EditResult(error=f"Error: {e}")
        except ReplaceNotFoundError as e:
            return EditResult(error=str(e))

        record = self.store.put(self.agent_id, path, new_content)
        mirrored = await self._mirror(record)
        return EditResult(path=path, occurrences=occurrences, mirrored=mirrored)

    def _replace(self, path: str, old_string: str, new_string: str, replace_all: bool) -> tuple[str, int]:
        content = self._require(path).content
        if replace_all:
            # Literal match: the pattern is escaped, and the replacement is
            # returned from a function so backslashes in it stay literal.
            new_content, occurrences = re.subn(re.escape(old_string), lambda _m: new_string, content)
        else:
            occurrences = 1 if old_string in content else 0
            new_content = content.replace(old_string, new_string, 1)
        if occurrences == 0:
            raise ReplaceNotFoundError(path)
        return new_content, occurrences

    # ==================== Batch transfer ====================

    async def upload_files(self, files: list[tuple[str, bytes]], *, strict: bool = False) -> list[FileUploadResponse]:
        """Store each file; per-item failures never abort the batch."""
        responses: list[FileUploadResponse] = []
        for raw_path, data in files:
            try:
                path = self._resolve(raw_path)
            except InvalidPathError:
                responses.append(FileUploadResponse(path=raw_path, error="invalid_path"))
                continue
            if self._is_directory(path):
                responses.append(FileUploadResponse(path=path, error="is_directory"))
                continue
            if self._file_ancestor(path) is not None:
                responses.append(FileUploadResponse(path=path, error="invalid_path"))
                continue
            content = data.decode("utf-8", errors="replace") if isinstance(data, bytes | bytearray) else str(data)
            try:
                record = self.store.put(self.agent_id, path, content)
            except PermissionError:
                responses.append(FileUploadResponse(path=path, error="permission_denied"))
                continue
            await self._mirror(record)
            responses.append(FileUploadResponse(path=path))

        if strict:
            _raise_for_failures(responses)
        return responses

    async def download_files(self, paths: list[str], *, strict: bool = False) -> list[FileDownloadResponse]:
        responses: list[FileDownloadResponse] = []
        for raw_path in paths:
            try:
                path = self._resolve(raw_path)
            except InvalidPathError:
                responses.append(FileDownloadResponse(path=raw_path, error="invalid_path"))
                continue
            try:
                record = self.store.get(self.agent_id, path)
            except PermissionError:
                responses.append(FileDownloadResponse(path=path, error="permission_denied"))
                continue
            if record is None:
                error = "is_directory" if self._is_directory(path) else "file_not_found"
                responses.append(FileDownloadResponse(path=path, error=error))
                continue
            responses.append(FileDownloadResponse(path=path, content=record.content.encode("utf-8")))

        if strict:
            _raise_for_failures(responses)
        return responses

    # ==================== Advisory mirror ====================

    async def _mirror(self, record: FileRecord) -> bool:
        """Best-effort copy into the live environment. Never raises.

        A miss is recorded on the manager so a later capture keeps the
        stored content instead of the environment's copy.
        """
        if self.manager is None:
            return False
        handle = self.manager.get_active(self.agent_id)
        if handle is None:
            self.manager.mark_unsynced(self.agent_id, record.path, record.updated_at)
            return False

        provider = self.manager.provider
        path = record.path
        try:
            parent = parent_dir(path)
            if parent != "/":
                await asyncio.to_thread(provider.make_dirs, handle.connection, parent)
            await asyncio.to_thread(provider.write_file, handle.connection, path, record.content)
        except EnvironmentGoneError as e:
            logger.warning("Mirror of %s skipped, environment %s is gone: %s", path, handle.external_id, e)
            self.manager.mark_unsynced(self.agent_id, path, record.updated_at)
            self.manager.mark_stale(self.agent_id, handle)
            return False
        except Exception as e:
            logger.warning("Mirror of %s to environment %s failed: %s", path, handle.external_id, e)
            self.manager.mark_unsynced(self.agent_id, path, record.updated_at)
            return False

        self.manager.mark_synced(self.agent_id, path, record.updated_at)
        if self._on_write is not None:
            self._on_write(self.agent_id)
        return True


def _raise_for_failures(responses: list[FileUploadResponse] | list[FileDownloadResponse]) -> None:
    failures = {r.path: r.error for r in responses if r.error}
    if failures:
        raise PartialBatchFailure(failures)
