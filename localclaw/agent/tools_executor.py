"""
Tool Executor
=============

The single entry point the agent loop uses to run tools.

The executor:
1. Builds the tool registry once from the tools configuration
2. Parses the model's argument text leniently
3. Runs a tool and always returns text, never an exception
4. Owns the shared browser and releases it on close()

Argument parsing:
    The model's arguments are untrusted text that is supposed to be a JSON
    object. When it isn't (truncated output, bare strings, lists), the whole
    text is handed to the tool's primary parameter instead of failing the
    call:

        bash         'ls -la'      -> {"command": "ls -la"}
        read_file    'notes.md'    -> {"path": "notes.md"}
"""

import json
from pathlib import Path
from typing import Any

from localclaw.llm.client import ToolCall
from localclaw.tools import ToolRegistry
from localclaw.tools.browser import BrowserTool, register_browser_tools
from localclaw.tools.files import FileTool, register_file_tools
from localclaw.tools.remote_coder import CodeAgentTool, register_code_agent_tools
from localclaw.tools.shell import ShellTool, register_shell_tools
from localclaw.utils.config import ToolsConfig
from localclaw.utils.logger import Logger

logger = Logger("ToolExecutor")


class ToolExecutor:
    """
    Executes tools called by the LLM.

    Example:
        executor = ToolExecutor(config.tools, config.workspace_dir)

        definitions = executor.get_definitions()
        args = executor.parse_arguments(tool_call)
        text = await executor.execute(tool_call.name, args)

        await executor.close()
    """

    def __init__(
        self,
        config: ToolsConfig,
        workspace_dir: Path,
        host_home: str = "~",
        registry: ToolRegistry | None = None
    ):
        """
        Initialize the executor.

        Args:
            config: Per-tool settings
            workspace_dir: Root for relative paths and the shell's cwd
            host_home: Host home directory, mentioned in the code agent's schema
            registry: Pre-built registry (tests); built from config when omitted
        """
        self.config = config
        self.workspace_dir = workspace_dir
        self.browser: BrowserTool | None = None

        if registry is not None:
            self.registry = registry
        else:
            self.registry = self._build_registry(host_home)

        logger.info(f"Tools available: {', '.join(self.registry.list_names())}")

    def _build_registry(self, host_home: str) -> ToolRegistry:
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

        registry = ToolRegistry()
        register_shell_tools(registry, ShellTool(self.config.bash, self.workspace_dir))
        register_file_tools(registry, FileTool(self.config.file, self.workspace_dir))

        self.browser = BrowserTool(self.config.browser)
        register_browser_tools(registry, self.browser)

        # Only advertised when enabled: the model can't use it without host setup
        if self.config.code_agent.enabled:
            register_code_agent_tools(registry, CodeAgentTool(self.config.code_agent), host_home)

        return registry

    def get_definitions(self) -> list[dict]:
        """Tool definitions to advertise to the LLM."""
        return self.registry.get_openai_functions()

    def parse_arguments(self, tool_call: ToolCall) -> dict[str, Any]:
        """
        Parse a tool call's argument text into a map.

        Args:
            tool_call: The call as returned by the model

        Returns:
            The parsed object, or {primary_parameter: raw_text} when the text
            is not a JSON object
        """
        raw = tool_call.arguments or ""
        if not raw.strip():
            return {}

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, dict):
            return parsed

        tool = self.registry.get(tool_call.name)
        key = tool.primary_parameter if tool else "input"
        logger.warning(f"Unparseable arguments for {tool_call.name}, passing as '{key}'")
        return {key: raw}

    async def execute(self, name: str, args: dict[str, Any]) -> str:
        """
        Run a tool and return its result text.

        Never raises: unknown tools, disabled tools, validation problems and
        handler crashes all come back as text the model can read.
        """
        logger.info(f"Executing tool: {name}")

        try:
            result = await self.registry.execute(name, args)
        except Exception as e:
            logger.error(f"Tool {name} crashed", e)
            return f"Tool error: {e}"

        if not result.success:
            logger.warning(f"Tool {name} failed: {result.to_message()[:200]}")

        return result.to_message()

    def get_available_tools(self) -> list[str]:
        return self.registry.list_names()

    def has_tool(self, name: str) -> bool:
        return self.registry.get(name) is not None

    async def close(self) -> None:
        """Release shared resources (the browser). Safe to call twice."""
        if self.browser is not None:
            await self.browser.close()
