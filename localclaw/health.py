"""
Health Check
============

A standalone check of whether the gateway can do useful work, meant for
container health probes (`localclaw health`, exit code 0 or 1).

Healthy means the LLM endpoint answers. Tool and memory settings are
reported alongside for operators.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any

from localclaw.llm.client import LLMClient
from localclaw.utils.config import Config

_PROCESS_STARTED = time.monotonic()


@dataclass
class HealthResult:
    healthy: bool
    gateway: dict[str, Any] = field(default_factory=dict)
    llm: dict[str, Any] = field(default_factory=dict)
    tools: dict[str, bool] = field(default_factory=dict)
    memory: dict[str, Any] = field(default_factory=dict)
    uptime: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthChecker:
    """
    Probes the LLM endpoint and summarizes the configuration.

    Example:
        result = await HealthChecker(get_config()).check()
        sys.exit(0 if result.healthy else 1)
    """

    def __init__(self, config: Config, llm: LLMClient | None = None):
        self.config = config
        self._owns_llm = llm is None
        self.llm = llm or LLMClient(config.llm)

    async def check(self) -> HealthResult:
        connected = await self.llm.test_connection()
        if self._owns_llm:
            await self.llm.close()
        llm_status = "connected" if connected else "unreachable"

        return HealthResult(
            healthy=connected,
            gateway={"status": "running"},
            llm={
                "status": llm_status,
                "provider": self.config.llm.provider,
                "model": self.config.llm.model,
            },
            tools={
                "bash": self.config.tools.bash.enabled,
                "file": self.config.tools.file.enabled,
                "browser": self.config.tools.browser.enabled,
                "code_agent": self.config.tools.code_agent.enabled,
            },
            memory={
                "enabled": self.config.memory.enabled,
                "directory": str(self.config.memory.directory),
            },
            uptime=round(time.monotonic() - _PROCESS_STARTED, 3),
        )
