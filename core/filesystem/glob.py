"""Glob matching shared by every path filter in the workspace.

One translator serves glob(), the search glob filter, and the sync exclude
list, so ``**`` means the same thing everywhere:

- ``**/`` matches zero or more whole directories
- ``**`` matches any sequence, including ``/``
- ``*`` matches any sequence without ``/``
- ``?`` matches one character other than ``/``
- ``{a,b}`` matches either alternative
- everything else (``.`` included) is literal
"""

from __future__ import annotations

import re
from functools import lru_cache

from core.filesystem.paths import dir_prefix


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    depth = 0
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if pattern.startswith("/", i):
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "{":
            depth += 1
            out.append("(?:")
        elif c == "}" and depth:
            depth -= 1
            out.append(")")
        elif c == "," and depth:
            out.append("|")
        else:
            out.append(re.escape(c))
        i += 1
    # Unbalanced braces are treated as literal text.
    if depth:
        return re.compile(re.escape(pattern))
    return re.compile("".join(out))


class GlobMatcher:
    def __init__(self, pattern: str):
        self.pattern = pattern
        self._regex = glob_to_regex(pattern)

    def __repr__(self) -> str:
        return f"GlobMatcher({self.pattern!r})"

    def match(self, text: str) -> bool:
        return self._regex.fullmatch(text) is not None

    def matches(self, path: str, base: str = "/", *, basename_anywhere: bool = False) -> bool:
        """Test *path* (absolute, under *base*) against the pattern.

        The pattern may match the path relative to *base* or the full path.
        The bare filename is also tested when the file sits directly under
        *base*; with ``basename_anywhere`` (ripgrep's ``--glob`` convention) a
        pattern without ``/`` is tested against the filename at any depth.
        """
        prefix = dir_prefix(base)
        relative = path[len(prefix):] if path.startswith(prefix) else path
        filename = path.rsplit("/", 1)[-1]

        if basename_anywhere and "/" not in self.pattern:
            return self.match(filename)
        if self.match(relative) or self.match(path):
            return True
        return "/" not in relative and self.match(filename)


def matches_any(path: str, matchers: list[GlobMatcher], base: str = "/") -> bool:
    return any(m.matches(path, base) for m in matchers)
