"""
LLM Module
==========

Client for OpenAI-compatible chat-completion endpoints.
"""

from localclaw.llm.client import LLMClient, LLMError, LLMResponse, ToolCall, TokenUsage

__all__ = ["LLMClient", "LLMError", "LLMResponse", "ToolCall", "TokenUsage"]
