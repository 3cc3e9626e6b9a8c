"""
System Prompt
=============

Builds the instructions a new conversation starts with. The prompt names
the tools and tells the model where it is running. The agent appends the
memory store's "Remembered context" block when a conversation is seeded.
"""

from localclaw.utils.config import Config

BASE_SYSTEM_PROMPT = """You are LocalClaw, an AI assistant with access to the user's computer. You have tools to execute bash commands, read and write files, and browse the web.

When the user asks you to perform a task, use the appropriate tools. Be helpful, concise, and proactive.

Important:
- Your workspace is at {workspace_dir}
- The host user is "{host_user}" with home directory "{host_home}"
- Use the bash tool for system operations
- Use the file tools for reading and writing files
- Use the browse tool to visit websites; when the user asks you to "open" a website, browse it instead of telling them to open it
{code_agent_lines}- Always confirm before destructive operations"""

CODE_AGENT_LINES = """- Use the code_agent tool for any coding task: building websites, writing scripts, debugging, refactoring. Delegate all software engineering work to it
- The code_agent tool runs on the HOST machine over SSH. Its workdir must be a real host path under "{host_home}", not a path inside this container
"""


def build_system_prompt(config: Config) -> str:
    """
    Render the system prompt for a new conversation.

    Args:
        config: Gateway configuration (paths, host user, enabled tools)

    Returns:
        The system message content
    """
    code_agent_lines = ""
    if config.tools.code_agent.enabled:
        code_agent_lines = CODE_AGENT_LINES.format(host_home=config.host_home)

    return BASE_SYSTEM_PROMPT.format(
        workspace_dir=config.workspace_dir,
        host_user=config.host_user,
        host_home=config.host_home,
        code_agent_lines=code_agent_lines,
    )
