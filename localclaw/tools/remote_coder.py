"""
Code Agent Tool
===============

Delegates a coding task to an AI coding agent CLI running on the host
machine, reached over ssh. The gateway usually runs in a container; the
agent runs outside it, with the host user's files and toolchain.

Setup is out of band: on first use the tool generates an ed25519 key in
<home>/ssh and logs the line to append to the host's authorized_keys.
Until that is done, ssh exits with 255 and the tool answers with the
setup instruction instead of a generic failure, so the model can relay
it to the user.
"""

import asyncio
import re
import shlex
import subprocess
from dataclasses import dataclass

from localclaw.tools import Tool, ToolRegistry, ToolResult
from localclaw.utils.config import CodeAgentToolConfig
from localclaw.utils.logger import Logger

logger = Logger("CodeAgent")

DEFAULT_HOST_IP = "172.17.0.1"

# ssh's own failure code: no route, refused, or key rejected
SSH_CONNECTION_FAILED = 255


@dataclass
class CodeAgentResult:
    output: str
    timed_out: bool = False
    error: str | None = None


def detect_host_ip() -> str:
    """
    Find the container's gateway address from the default route.

    Falls back to Docker's default bridge address.
    """
    try:
        route = subprocess.run(
            ["ip", "route"], capture_output=True, text=True, timeout=5, check=False
        ).stdout
    except (OSError, subprocess.SubprocessError):
        return DEFAULT_HOST_IP

    for line in route.splitlines():
        if line.startswith("default"):
            match = re.search(r"via\s+(\S+)", line)
            if match:
                return match.group(1)
    return DEFAULT_HOST_IP


class CodeAgentTool:
    """
    Runs `<agent command> '<prompt>'` on the host over ssh.

    Example:
        agent = CodeAgentTool(config.tools.code_agent)
        result = await agent.execute("add a /health route", workdir="/home/me/app")
    """

    def __init__(self, config: CodeAgentToolConfig):
        self.config = config
        self.key_path = config.key_dir / "id_ed25519"
        self._host_ip = config.host_ip

    @property
    def host_ip(self) -> str:
        if self._host_ip is None:
            self._host_ip = detect_host_ip()
        return self._host_ip

    @property
    def target(self) -> str:
        return f"{self.config.host_user}@{self.host_ip}"

    def ensure_key(self) -> bool:
        """
        Make sure the ssh key pair exists, generating it if needed.

        Returns:
            True if a usable key is present
        """
        if self.key_path.exists():
            return True

        try:
            self.config.key_dir.mkdir(parents=True, exist_ok=True)
            subprocess.run(
                ["ssh-keygen", "-t", "ed25519", "-f", str(self.key_path),
                 "-N", "", "-C", "localclaw-agent"],
                capture_output=True, check=True, timeout=30,
            )
            self.key_path.chmod(0o600)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error("Failed to generate SSH key", e)
            return False

        logger.info("SSH key generated for host access. Run this on your host:")
        logger.info(f"  {self.setup_instructions()}")
        return True

    def setup_instructions(self) -> str | None:
        """The command that authorizes this gateway's key on the host."""
        try:
            public_key = self.key_path.with_suffix(".pub").read_text().strip()
        except OSError:
            return None
        return f"echo '{public_key}' >> ~/.ssh/authorized_keys"

    def build_command(self, prompt: str, workdir: str | None = None) -> list[str]:
        remote = f"{self.config.agent_command} {shlex.quote(prompt)}"
        if workdir:
            remote = f"cd {shlex.quote(workdir)} && {remote}"
        return [
            "ssh",
            "-i", str(self.key_path),
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            self.target,
            remote,
        ]

    async def execute(self, prompt: str, workdir: str | None = None) -> CodeAgentResult:
        if not self.config.enabled:
            return CodeAgentResult("", error="Code agent tool is disabled")

        if not await asyncio.to_thread(self.ensure_key):
            return CodeAgentResult("", error="SSH key not ready, check the gateway logs")

        logger.info(f"Running code agent on host via SSH ({self.target})")

        process = await asyncio.create_subprocess_exec(
            *self.build_command(prompt, workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Code agent timed out")
            process.terminate()
            stdout, stderr = await process.communicate()
            return CodeAgentResult(
                _combine(stdout, stderr), timed_out=True, error="Timed out"
            )

        output = _combine(stdout, stderr)
        code = process.returncode

        if code == SSH_CONNECTION_FAILED:
            logger.error("SSH connection failed, is the key authorized on the host?")
            instructions = self.setup_instructions() or "Check the gateway logs for the SSH public key"
            return CodeAgentResult(
                "",
                error=(
                    f"SSH connection to {self.target} failed. Run this on your host "
                    f"to authorize the gateway:\n\n  {instructions}"
                ),
            )
        if code != 0:
            return CodeAgentResult(output, error=f"Exit code: {code}")

        logger.info(f"Code agent completed ({len(output)} chars)")
        return CodeAgentResult(output)

    async def code_agent_tool(self, params: dict) -> ToolResult:
        if not self.config.enabled:
            return ToolResult.fail("Code agent tool is disabled")

        prompt = params.get("prompt")
        if not prompt:
            return ToolResult.fail("Error: 'prompt' is required")

        workdir = params.get("workdir")
        result = await self.execute(str(prompt), str(workdir) if workdir else None)

        if result.timed_out:
            return ToolResult.fail(f"Code agent timed out.\n{result.output}")
        if result.error:
            return ToolResult.fail(f"Code agent error: {result.error}\n{result.output}")
        return ToolResult.ok(result.output)


def _combine(stdout: bytes, stderr: bytes) -> str:
    # ssh prints host-key notices on stderr; they are noise to the model
    err_lines = [
        line for line in stderr.decode("utf-8", errors="replace").splitlines()
        if "Warning: Permanently added" not in line
    ]
    output = stdout.decode("utf-8", errors="replace")
    if err_lines:
        output += "\n".join(err_lines)
    return output


def register_code_agent_tools(registry: ToolRegistry, agent: CodeAgentTool, host_home: str) -> None:
    """Register the code_agent tool."""
    registry.register(Tool(
        name="code_agent",
        description=(
            "Delegate a coding task to an expert AI coding agent running on the host. "
            "Use this for writing code, building projects, debugging, refactoring, and "
            "any software engineering task. Provide a clear, detailed prompt describing "
            "what you want built or fixed."
        ),
        parameters={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": (
                        "The coding task to perform. Be specific about what to build, "
                        "which files to modify, and any requirements."
                    )
                },
                "workdir": {
                    "type": "string",
                    "description": f"Host directory to work in (defaults to {host_home})"
                }
            },
            "required": ["prompt"]
        },
        execute=agent.code_agent_tool
    ))
