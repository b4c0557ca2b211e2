"""Workspace path normalization.

Stored paths are absolute POSIX paths with no trailing slash. The root itself
is "/".
"""

from __future__ import annotations

import posixpath

from sandbox.errors import InvalidPathError


def normalize_path(path: str, root: str = "/") -> str:
    """Return the canonical absolute form of *path*.

    Relative paths resolve against *root*. Raises InvalidPathError for empty
    or NUL-containing paths.
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidPathError("Path must be a non-empty string")
    if "\x00" in path:
        raise InvalidPathError(f"Path contains a NUL byte: {path!r}")
    if not path.startswith("/"):
        path = posixpath.join(root or "/", path)
    normalized = posixpath.normpath(path)
    # normpath keeps a leading "//" (POSIX allows it to be special); we don't.
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def dir_prefix(directory: str) -> str:
    """Prefix every descendant of *directory* starts with."""
    return "/" if directory == "/" else directory + "/"


def parent_dir(path: str) -> str:
    return posixpath.dirname(path) or "/"


def is_under(path: str, directory: str) -> bool:
    return path.startswith(dir_prefix(directory))
