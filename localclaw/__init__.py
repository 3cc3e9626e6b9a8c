"""
LocalClaw - Local LLM Gateway
=============================

A gateway that lets you talk to a locally hosted language model which can
act on your machine through tools, over HTTP or a messaging channel.

This package provides:
- Agent loop that drives bounded multi-turn tool calling
- Tools for shell, files, a headless browser and a remote coding agent
- LLM client for any OpenAI-compatible chat-completion endpoint
- Reconnecting channel sessions for WhatsApp and Slack
- A FastAPI gateway and a small management CLI
"""

__version__ = "1.0.0"
