"""
MCM API module.

FastAPI application exposing server and proxy management over HTTP, plus a
WebSocket console for live logs and commands. Run it with `mcm serve`.
"""

from .app import app, create_app

__all__ = ["app", "create_app"]
