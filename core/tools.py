"""Agent-facing tools over an AgentWorkspace.

Every tool returns text; errors come back as messages the model can read,
never as exceptions that would abort the reasoning loop.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from langchain_core.tools import BaseTool, tool

from sandbox.errors import ReplaceNotFoundError

if TYPE_CHECKING:
    from sandbox.workspace import AgentWorkspace

TOOL_LS = "ls"
TOOL_READ_FILE = "read_file"
TOOL_WRITE_FILE = "write_file"
TOOL_EDIT_FILE = "edit_file"
TOOL_GLOB = "glob"
TOOL_GREP = "grep"
TOOL_EXECUTE = "execute"


def _format_listing(directory: str, entries: list) -> str:
    if not entries:
        return f"{directory}: Empty directory"
    items = []
    for entry in entries:
        name = entry.path.rsplit("/", 1)[-1]
        items.append(f"\t{name}/" if entry.is_dir else f"\t{name} ({entry.size} bytes)")
    return f"{directory.rstrip('/')}/\n" + "\n".join(items)


def build_workspace_tools(workspace: AgentWorkspace) -> list[BaseTool]:
    """Build the file and shell tools bound to one agent's workspace."""

    @tool(TOOL_LS)
    def ls(path: str | None = None) -> str:
        """List direct children of a directory. Defaults to the workspace root."""
        directory = path or workspace.root
        try:
            entries = workspace.list(directory)
        except Exception as e:
            return f"Error listing directory: {e}"
        return _format_listing(directory, entries)

    @tool(TOOL_READ_FILE)
    def read_file(file_path: str, offset: int = 0, limit: int | None = None) -> str:
        """Read a file as numbered lines. offset is 0-based; limit caps the number of lines."""
        return workspace.read(file_path, offset, limit)

    @tool(TOOL_WRITE_FILE)
    async def write_file(file_path: str, content: str) -> str:
        """Create or overwrite a file with the given content."""
        result = await workspace.write(file_path, content)
        if result.error:
            return result.error
        lines = content.count("\n") + 1
        return f"File written: {result.path}\n   Lines: {lines}\n   Size: {len(content)} bytes"

    @tool(TOOL_EDIT_FILE)
    async def edit_file(file_path: str, old_string: str, new_string: str, replace_all: bool = False) -> str:
        """Replace old_string with new_string (exact match).

        Only the first occurrence is replaced unless replace_all is true.
        old_string and new_string must differ.
        """
        result = await workspace.edit(file_path, old_string, new_string, replace_all)
        if result.error:
            if result.error == ReplaceNotFoundError.message:
                return f"{result.error}\n   Looking for: {old_string[:100]}"
            return result.error
        noun = "occurrence" if result.occurrences == 1 else "occurrences"
        return f"File edited: {result.path}\n   Replaced {result.occurrences} {noun}"

    @tool(TOOL_GLOB)
    def glob(pattern: str, path: str | None = None) -> str:
        """Find files by glob pattern (e.g. "*.py", "**/*.ts", "src/{a,b}/*.md")."""
        matches = workspace.glob(pattern, path)
        if isinstance(matches, str):
            return matches
        if not matches:
            return "No files found"
        return "\n".join(m.path for m in matches)

    @tool(TOOL_GREP)
    def grep(pattern: str, path: str | None = None, glob: str | None = None) -> str:
        """Search file contents with a regular expression.

        An invalid regex is searched as literal text. glob filters candidate files.
        """
        result = workspace.search(pattern, path, glob)
        if isinstance(result, str):
            return result
        if not result:
            return "No matches found"
        return "\n".join(f"{m.path}:{m.line}:{m.text}" for m in result)

    @tool(TOOL_EXECUTE)
    async def execute(command: str, timeout: float | None = None) -> str:
        """Run a shell command in the agent's environment, starting it if needed."""
        response = await workspace.execute(command, timeout)
        if response.exit_code != 0 and not response.output.startswith("Error"):
            return f"{response.output}\n\nExit code: {response.exit_code}"
        return response.output

    return [ls, read_file, write_file, edit_file, glob, grep, execute]
