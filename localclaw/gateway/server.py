"""
Gateway Server
==============

The HTTP front door: a FastAPI app in front of the agent and the channel
registry.

Routes:
    GET  /health                       public liveness probe
    POST /api/chat                     {message, conversation_id?} -> {response, conversation_id}
    POST /api/chat/clear               {conversation_id} -> {status: "cleared"}
    GET  /api/status                   LLM and channel connectivity
    GET  /api/models                   {models, current}
    GET  /api/channels                 {channels, status, details}
    POST /api/channels/{name}/start
    POST /api/channels/{name}/stop

Authentication:
    When gateway.auth_token is set, every /api/* route needs it, as
    "Authorization: Bearer <token>", ?token=<token>, or a "token" field in
    the JSON body. Anything else is a 401.

Errors are returned as {"error": "..."}.

On startup the channels are wired to the agent (one conversation per
channel sender) and auto-started. On shutdown the agent's tools are
released and every channel is stopped.
"""

import secrets
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from localclaw import __version__
from localclaw.agent import Agent
from localclaw.channels import ChannelError, IncomingMessage
from localclaw.channels.registry import ChannelRegistry
from localclaw.utils.config import Config
from localclaw.utils.logger import Logger

logger = Logger("Gateway")


# === Request Models ===

class ChatRequest(BaseModel):
    message: str | None = None
    conversation_id: str | None = None
    token: str | None = None


class ClearRequest(BaseModel):
    conversation_id: str | None = None
    token: str | None = None


# === Authentication ===

async def _provided_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()

    if request.query_params.get("token"):
        return request.query_params["token"]

    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("token"), str):
            return body["token"]
    return None


def create_app(config: Config, agent: Agent, channels: ChannelRegistry) -> FastAPI:
    """
    Build the gateway app.

    Args:
        config: Gateway configuration (auth token, LLM identity)
        agent: The orchestration loop every message goes through
        channels: Channel sessions to wire up and manage

    Returns:
        The FastAPI application (serve it with uvicorn)
    """
    started_at = time.monotonic()

    async def handle_channel_message(message: IncomingMessage) -> str:
        return await agent.chat(message.conversation_id, message.text)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        channels.set_handler(handle_channel_message)
        await channels.start_all()
        logger.info("Gateway ready")
        try:
            yield
        finally:
            logger.info("Shutting down gateway")
            await channels.stop_all()
            await agent.close()

    app = FastAPI(title="LocalClaw Gateway", version=__version__, lifespan=lifespan)

    async def require_auth(request: Request) -> None:
        expected = config.gateway.auth_token
        if not expected:
            return
        provided = await _provided_token(request)
        if not provided or not secrets.compare_digest(provided, expected):
            raise HTTPException(status_code=401, detail="Invalid authentication token")

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path} failed", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    def uptime() -> float:
        return round(time.monotonic() - started_at, 3)

    # === Public ===

    @app.get("/health")
    async def health():
        return {"status": "ok", "uptime": uptime()}

    # === Protected ===

    @app.post("/api/chat", dependencies=[Depends(require_auth)])
    async def chat(body: ChatRequest):
        if not body.message:
            raise HTTPException(status_code=400, detail="Message is required")

        conversation_id = body.conversation_id or str(uuid.uuid4())
        response = await agent.chat(conversation_id, body.message)
        return {"response": response, "conversation_id": conversation_id}

    @app.post("/api/chat/clear", dependencies=[Depends(require_auth)])
    async def clear_chat(body: ClearRequest):
        if body.conversation_id:
            agent.clear_conversation(body.conversation_id)
        return {"status": "cleared"}

    @app.get("/api/status", dependencies=[Depends(require_auth)])
    async def status():
        connected = await agent.test_connection()
        return {
            "status": "running",
            "llm": {
                "connected": connected,
                "provider": config.llm.provider,
                "model": config.llm.model,
            },
            "channels": channels.get_status(),
            "uptime": uptime(),
        }

    @app.get("/api/models", dependencies=[Depends(require_auth)])
    async def models():
        return {"models": await agent.list_models(), "current": config.llm.model}

    @app.get("/api/channels", dependencies=[Depends(require_auth)])
    async def list_channels():
        return {
            "channels": channels.list_channels(),
            "status": channels.get_status(),
            "details": channels.describe(),
        }

    @app.post("/api/channels/{name}/start", dependencies=[Depends(require_auth)])
    async def start_channel(name: str):
        await _channel_action(channels.start, name)
        return {"status": "started", "channel": name}

    @app.post("/api/channels/{name}/stop", dependencies=[Depends(require_auth)])
    async def stop_channel(name: str):
        await _channel_action(channels.stop, name)
        return {"status": "stopped", "channel": name}

    async def _channel_action(action, name: str) -> None:
        if channels.get(name) is None:
            raise HTTPException(status_code=404, detail=f"Channel not found: {name}")
        try:
            await action(name)
        except ChannelError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e

    return app
