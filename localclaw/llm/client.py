"""
LLM Client
==========

Talks to any OpenAI-compatible chat-completion endpoint: a local Ollama,
llama.cpp server, vLLM, LM Studio or the OpenAI API itself.

One call to chat() is exactly one HTTP request. Retries are disabled on
the underlying client so the agent loop stays in control of how many
requests a turn makes. Every transport, status or timeout failure is
raised as LLMError.

The two probes, test_connection() and list_models(), are best-effort:
they never raise and report failure as False / [].

Usage:
    client = LLMClient(config.llm)

    response = await client.chat(messages, tools=registry.get_openai_functions())
    if response.tool_calls:
        ...
    else:
        print(response.content)
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from localclaw.utils.config import LLMConfig
from localclaw.utils.logger import Logger

logger = Logger("LLM")

PROBE_TIMEOUT_SECONDS = 5.0


class LLMError(Exception):
    """A chat-completion request failed or returned nothing usable."""


@dataclass
class ToolCall:
    """
    A tool invocation requested by the model.

    Attributes:
        id: Opaque identifier echoed back on the tool result message
        name: The tool name
        arguments: Raw argument text as produced by the model (untrusted)
    """
    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict:
        """OpenAI wire format for an assistant message's tool_calls entry."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """
    Parsed result of one chat completion.

    Attributes:
        content: Assistant text (empty string when the model only called tools)
        tool_calls: Requested tool calls, in the order the model listed them
        finish_reason: e.g. "stop", "tool_calls", "length"
        usage: Token accounting when the server reports it
    """
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: TokenUsage | None = None


class LLMClient:
    """
    Client for an OpenAI-compatible chat-completion endpoint.

    Example:
        client = LLMClient(config.llm)
        if await client.test_connection():
            models = await client.list_models()
    """

    def __init__(self, config: LLMConfig, http_client: httpx.AsyncClient | None = None):
        """
        Initialize the client.

        Args:
            config: Endpoint, model and sampling settings
            http_client: Optional shared httpx client (tests pass one with a
                mock transport)
        """
        self.config = config
        self._http_client = http_client
        self.openai = AsyncOpenAI(
            base_url=config.base_url,
            # Local servers ignore the key but the SDK insists on one
            api_key=config.api_key or "not-needed",
            timeout=config.timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    @property
    def model(self) -> str:
        return self.config.model

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _is_ollama(self) -> bool:
        return self.config.provider == "ollama"

    def _ollama_root(self) -> str:
        """Ollama's native API lives beside the /v1 compatibility prefix."""
        base = self.config.base_url
        return base[:-3] if base.endswith("/v1") else base

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None
    ) -> LLMResponse:
        """
        Send the conversation and return the model's next message.

        Args:
            messages: Full history in OpenAI message format
            tools: Tool definitions to advertise; omitted from the request
                when empty

        Returns:
            The parsed LLMResponse

        Raises:
            LLMError: On timeout, connection failure, non-2xx status or a
                response without choices
        """
        request: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "stream": False,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        logger.debug(f"Sending {len(messages)} messages to {self.config.base_url}")

        try:
            completion = await self.openai.chat.completions.create(**request)
        except openai.APITimeoutError as e:
            raise LLMError(
                f"LLM request timed out after {self.config.timeout_seconds:g}s"
            ) from e
        except openai.APIStatusError as e:
            raise LLMError(f"LLM request failed ({e.status_code}): {e.message}") from e
        except openai.APIConnectionError as e:
            raise LLMError(f"Could not reach LLM at {self.config.base_url}: {e}") from e

        choices = getattr(completion, "choices", None)
        if not choices:
            raise LLMError("No response from LLM")

        choice = choices[0]
        message = choice.message

        tool_calls = []
        for index, tc in enumerate(message.tool_calls or []):
            tool_calls.append(ToolCall(
                # Some local servers omit the id; the loop still needs one
                id=tc.id or f"call_{index}",
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            ))

        usage = None
        if getattr(completion, "usage", None):
            usage = TokenUsage(
                prompt_tokens=completion.usage.prompt_tokens or 0,
                completion_tokens=completion.usage.completion_tokens or 0,
                total_tokens=completion.usage.total_tokens or 0,
            )
            logger.debug(f"Token usage: {usage.total_tokens} total")

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    async def _probe(self, url: str) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.get(
                url, headers=self._headers(), timeout=PROBE_TIMEOUT_SECONDS
            )
        async with httpx.AsyncClient(timeout=PROBE_TIMEOUT_SECONDS) as client:
            return await client.get(url, headers=self._headers())

    async def test_connection(self) -> bool:
        """Return True if the endpoint answers; never raises."""
        if self._is_ollama():
            url = f"{self._ollama_root()}/"
        else:
            url = f"{self.config.base_url}/models"
        try:
            response = await self._probe(url)
            return response.is_success
        except Exception as e:
            logger.debug(f"Connection probe failed: {e}")
            return False

    async def list_models(self) -> list[str]:
        """Return the model names the endpoint offers, or [] on any failure."""
        try:
            if self._is_ollama():
                response = await self._probe(f"{self._ollama_root()}/api/tags")
                if not response.is_success:
                    return []
                return [m["name"] for m in response.json().get("models", [])]

            response = await self._probe(f"{self.config.base_url}/models")
            if not response.is_success:
                return []
            return [m["id"] for m in response.json().get("data", [])]
        except Exception as e:
            logger.debug(f"Model listing failed: {e}")
            return []

    async def close(self) -> None:
        await self.openai.close()
