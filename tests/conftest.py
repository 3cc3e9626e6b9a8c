"""Shared fixtures: a throwaway config, a scripted LLM and fake channel backends."""

import asyncio
from pathlib import Path

import pytest

from localclaw.channels import Channel, ChannelError
from localclaw.llm.client import LLMError, LLMResponse, ToolCall
from localclaw.utils.config import (
    BrowserToolConfig,
    CodeAgentToolConfig,
    Config,
    FileToolConfig,
    GatewayConfig,
    LLMConfig,
    MemoryConfig,
    ShellToolConfig,
    ToolsConfig,
)


def build_config(home: Path, auth_token: str = "", **tool_flags) -> Config:
    workspace = home / "workspace"
    return Config(
        gateway=GatewayConfig(host="127.0.0.1", port=18789, auth_token=auth_token),
        llm=LLMConfig(
            provider="ollama",
            base_url="http://llm.test/v1",
            model="llama3.2:3b",
            temperature=0.7,
            max_tokens=512,
            api_key=None,
            timeout_seconds=5.0,
        ),
        tools=ToolsConfig(
            bash=ShellToolConfig(
                enabled=tool_flags.get("bash", True),
                timeout_seconds=tool_flags.get("bash_timeout", 5.0),
                allowed_commands=tuple(tool_flags.get("allowed", ())),
                denied_commands=tuple(tool_flags.get("denied", ())),
            ),
            file=FileToolConfig(enabled=tool_flags.get("file", True)),
            browser=BrowserToolConfig(
                enabled=tool_flags.get("browser", False), headless=True, timeout_seconds=5.0
            ),
            code_agent=CodeAgentToolConfig(
                enabled=tool_flags.get("code_agent", False),
                timeout_seconds=5.0,
                host_user="tester",
                host_ip="10.0.0.1",
                key_dir=home / "ssh",
                agent_command="claude -p",
            ),
        ),
        memory=MemoryConfig(enabled=True, directory=home / "memory"),
        channels=(),
        home_dir=home,
        workspace_dir=workspace,
        host_user="tester",
        host_home="/home/tester",
        log_level="error",
    )


@pytest.fixture
def config(tmp_path):
    return build_config(tmp_path)


class ScriptedLLM:
    """Returns queued responses in order; an LLMError in the queue is raised."""

    model = "scripted"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests: list[list[dict]] = []
        self.closed = False

    def queue(self, response) -> None:
        self.responses.append(response)

    async def chat(self, messages, tools=None):
        self.requests.append([dict(m) for m in messages])
        if not self.responses:
            raise LLMError("script exhausted")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def test_connection(self) -> bool:
        return True

    async def list_models(self) -> list[str]:
        return ["llama3.2:3b", "qwen2.5:7b"]

    async def close(self) -> None:
        self.closed = True


def reply(content: str) -> LLMResponse:
    return LLMResponse(content=content)


def tool_request(*calls: tuple[str, str, str], content: str = "") -> LLMResponse:
    """calls: (id, name, arguments-json)"""
    return LLMResponse(
        content=content,
        tool_calls=[ToolCall(id=i, name=n, arguments=a) for i, n, a in calls],
        finish_reason="tool_calls",
    )


@pytest.fixture
def llm():
    return ScriptedLLM()


class FakeBackend:
    """In-memory stand-in for the WhatsApp bridge."""

    def __init__(self, emit, fail_connect: bool = False):
        self.emit = emit
        self.fail_connect = fail_connect
        self.connected_with: list = []
        self.sent: list[tuple[str, str]] = []
        self.presence: list[tuple[str, str]] = []
        self.closed = False
        self._next_id = 0

    async def connect(self, creds):
        self.connected_with.append(creds)
        if self.fail_connect:
            raise ConnectionError("bridge unreachable")

    async def send_text(self, jid, text):
        self._next_id += 1
        self.sent.append((jid, text))
        return f"SENT{self._next_id}"

    async def send_presence(self, state, jid):
        self.presence.append((state, jid))

    async def presence_subscribe(self, jid):
        self.presence.append(("subscribe", jid))

    async def close(self):
        self.closed = True


class BackendFactory:
    """Records every backend a session creates."""

    def __init__(self, fail_connect: bool = False):
        self.fail_connect = fail_connect
        self.backends: list[FakeBackend] = []

    def __call__(self, emit):
        backend = FakeBackend(emit, fail_connect=self.fail_connect)
        self.backends.append(backend)
        return backend

    @property
    def current(self) -> FakeBackend:
        return self.backends[-1]


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeChannel(Channel):
    """A channel that only records what the registry asks of it."""

    type = "fake"

    def __init__(self, name, fail_start=False):
        super().__init__(name)
        self.fail_start = fail_start
        self.running = False
        self.handler = None
        self.stops = 0

    async def start(self, handler):
        if self.fail_start:
            raise ChannelError("backend unavailable")
        self.handler = handler
        self.running = True

    async def stop(self):
        self.stops += 1
        self.running = False

    async def send(self, recipient_id, text):
        pass

    def is_connected(self):
        return self.running

    def is_running(self):
        return self.running
