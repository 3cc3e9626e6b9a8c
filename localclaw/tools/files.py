"""
File Tools
==========

read_file, write_file, list_directory and delete_file.

Path resolution: relative paths resolve against the workspace root,
absolute paths are used unchanged. This is a convenience scope, not a
sandbox: "../" segments are not blocked, and the shell tool can reach
anything the process can anyway.

Blocking file I/O runs in a worker thread so a slow disk never stalls the
event loop (and with it every other conversation and channel).
"""

import asyncio
import os
from pathlib import Path

from localclaw.tools import Tool, ToolRegistry, ToolResult
from localclaw.utils.config import FileToolConfig
from localclaw.utils.logger import Logger

logger = Logger("Files")

DISABLED_MESSAGE = "File tool is disabled"


class FileTool:
    """
    Workspace-relative file operations.

    Example:
        files = FileTool(config.tools.file, config.workspace_dir)
        files.write_file("notes/todo.md", "- ship it")
        files.list_directory("notes")     # ["todo.md"]
    """

    def __init__(self, config: FileToolConfig, workspace_dir: Path):
        self.config = config
        self.workspace_dir = workspace_dir

    def resolve_path(self, file_path: str) -> Path:
        path = Path(file_path).expanduser()
        if path.is_absolute():
            return path
        return self.workspace_dir / path

    def _check_enabled(self) -> None:
        if not self.config.enabled:
            raise PermissionError(DISABLED_MESSAGE)

    def read_file(self, file_path: str) -> str:
        self._check_enabled()
        resolved = self.resolve_path(file_path)
        logger.info(f"Reading file: {resolved}")
        return resolved.read_text(encoding="utf-8", errors="replace")

    def write_file(self, file_path: str, content: str) -> Path:
        self._check_enabled()
        resolved = self.resolve_path(file_path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Writing file: {resolved}")
        resolved.write_text(content, encoding="utf-8")
        return resolved

    def list_directory(self, dir_path: str = ".") -> list[str]:
        self._check_enabled()
        resolved = self.resolve_path(dir_path)
        logger.info(f"Listing directory: {resolved}")
        return sorted(os.listdir(resolved))

    def delete_file(self, file_path: str) -> None:
        self._check_enabled()
        resolved = self.resolve_path(file_path)
        logger.info(f"Deleting file: {resolved}")
        resolved.unlink()

    # ==========================================================================
    # Tool handlers
    # ==========================================================================

    async def read_file_tool(self, params: dict) -> ToolResult:
        path = params.get("path")
        if not path:
            return ToolResult.fail("Error reading file: 'path' is required")
        if not self.config.enabled:
            return ToolResult.fail(DISABLED_MESSAGE)
        try:
            return ToolResult.ok(await asyncio.to_thread(self.read_file, str(path)))
        except OSError as e:
            return ToolResult.fail(f"Error reading file: {e}")

    async def write_file_tool(self, params: dict) -> ToolResult:
        path = params.get("path")
        content = params.get("content", "")
        if not path:
            return ToolResult.fail("Error writing file: 'path' is required")
        if not self.config.enabled:
            return ToolResult.fail(DISABLED_MESSAGE)
        if not isinstance(content, str):
            content = str(content)
        try:
            await asyncio.to_thread(self.write_file, str(path), content)
            return ToolResult.ok(f"File written successfully: {path}")
        except OSError as e:
            return ToolResult.fail(f"Error writing file: {e}")

    async def list_directory_tool(self, params: dict) -> ToolResult:
        if not self.config.enabled:
            return ToolResult.fail(DISABLED_MESSAGE)
        path = params.get("path") or "."
        try:
            entries = await asyncio.to_thread(self.list_directory, str(path))
            return ToolResult.ok("\n".join(entries))
        except OSError as e:
            return ToolResult.fail(f"Error listing directory: {e}")

    async def delete_file_tool(self, params: dict) -> ToolResult:
        path = params.get("path")
        if not path:
            return ToolResult.fail("Error deleting file: 'path' is required")
        if not self.config.enabled:
            return ToolResult.fail(DISABLED_MESSAGE)
        try:
            await asyncio.to_thread(self.delete_file, str(path))
            return ToolResult.ok(f"File deleted: {path}")
        except OSError as e:
            return ToolResult.fail(f"Error deleting file: {e}")


def register_file_tools(registry: ToolRegistry, files: FileTool) -> None:
    """Register the four file tools."""
    registry.register(Tool(
        name="read_file",
        description="Read the contents of a file",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read"}
            },
            "required": ["path"]
        },
        execute=files.read_file_tool
    ))

    registry.register(Tool(
        name="write_file",
        description="Write content to a file, creating it if it does not exist",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to write"},
                "content": {"type": "string", "description": "Content to write to the file"}
            },
            "required": ["path", "content"]
        },
        execute=files.write_file_tool
    ))

    registry.register(Tool(
        name="list_directory",
        description="List files and directories in a given path",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Directory path to list (defaults to workspace)"
                }
            },
            "required": []
        },
        execute=files.list_directory_tool
    ))

    registry.register(Tool(
        name="delete_file",
        description="Delete a single file",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to delete"}
            },
            "required": ["path"]
        },
        execute=files.delete_file_tool
    ))
