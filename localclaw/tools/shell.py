"""
Shell Tool
==========

Runs a command line through the system shell in the workspace.

Guard rails, in the order they are checked:
1. The tool must be enabled
2. The base command (first word) must not be on the deny-list
3. If an allow-list is configured, the base command must be on it

The run is bounded by a timeout. On expiry the whole process group is
killed, so background children of the shell don't outlive the call.
Captured output is capped so a runaway `cat` can't flood memory.
"""

import asyncio
import os
import signal
from dataclasses import dataclass
from pathlib import Path

from localclaw.tools import Tool, ToolRegistry, ToolResult
from localclaw.utils.config import ShellToolConfig
from localclaw.utils.logger import Logger

logger = Logger("Shell")


@dataclass
class ShellResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool

    def to_text(self) -> str:
        output = self.stdout or self.stderr
        if self.timed_out:
            return f"Command timed out.\n{output}"
        return f"Exit code: {self.exit_code}\n{output}"


def base_command(command: str) -> str:
    """First whitespace-separated word of a command line."""
    parts = command.strip().split()
    return parts[0] if parts else ""


def _cap(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[...output capped, {len(text) - limit} chars dropped]"


class ShellTool:
    """
    Executes shell commands.

    Example:
        shell = ShellTool(config.tools.bash, config.workspace_dir)
        result = await shell.run("ls -la")
        print(result.exit_code, result.stdout)
    """

    def __init__(self, config: ShellToolConfig, workspace_dir: Path):
        self.config = config
        self.workdir = config.workdir or workspace_dir

    def is_command_allowed(self, command: str) -> bool:
        base = base_command(command)

        if base in self.config.denied_commands:
            logger.warning(f"Denied command: {base}")
            return False

        if self.config.allowed_commands:
            return base in self.config.allowed_commands

        return True

    async def run(self, command: str, cwd: Path | None = None) -> ShellResult:
        """
        Run a command and capture its output.

        Args:
            command: The command line
            cwd: Working directory (defaults to the configured workdir)

        Returns:
            ShellResult; refusals are reported with exit code 1
        """
        if not self.config.enabled:
            return ShellResult("", "Bash tool is disabled", 1, False)

        if not command or not command.strip():
            return ShellResult("", "No command given", 1, False)

        if not self.is_command_allowed(command):
            return ShellResult("", f"Command not allowed: {base_command(command)}", 1, False)

        workdir = cwd or self.workdir
        workdir.mkdir(parents=True, exist_ok=True)

        logger.info(f"Executing: {command}")

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(workdir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Command timed out after {self.config.timeout_seconds:g}s: {command}")
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            stdout, stderr = await process.communicate()

        limit = self.config.max_output_chars
        return ShellResult(
            stdout=_cap(stdout.decode("utf-8", errors="replace"), limit),
            stderr=_cap(stderr.decode("utf-8", errors="replace"), limit),
            exit_code=process.returncode if process.returncode is not None else 1,
            timed_out=timed_out,
        )

    async def bash_tool(self, params: dict) -> ToolResult:
        if not self.config.enabled:
            return ToolResult.fail("Bash tool is disabled")

        command = params.get("command")
        if not isinstance(command, str):
            return ToolResult.fail("Error: 'command' is required")

        result = await self.run(command)
        text = result.to_text()
        if result.exit_code == 0 and not result.timed_out:
            return ToolResult.ok(text)
        return ToolResult.fail(text)


def register_shell_tools(registry: ToolRegistry, shell: ShellTool) -> None:
    """Register the bash tool."""
    registry.register(Tool(
        name="bash",
        description=(
            "Execute a bash command in the workspace. Use for system operations, "
            "running programs, file manipulation, and more."
        ),
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The bash command to execute"
                }
            },
            "required": ["command"]
        },
        execute=shell.bash_tool
    ))
