"""
Gateway Module
==============

FastAPI app exposing the agent and channel management over HTTP.
"""

from localclaw.gateway.server import create_app

__all__ = ["create_app"]
