"""
Agent Module
============

The orchestration loop and its helpers:
- core: Agent, the bounded tool-calling loop
- tools_executor: builds the tool registry and runs tools as text
- prompt: the system prompt for new conversations
"""

from localclaw.agent.core import Agent, MAX_TOOL_ITERATIONS, MAX_TOOL_RESULT_CHARS
from localclaw.agent.tools_executor import ToolExecutor

__all__ = ["Agent", "ToolExecutor", "MAX_TOOL_ITERATIONS", "MAX_TOOL_RESULT_CHARS"]
