"""API module for HTTP routes.

This module exposes the FastAPI router for the agent builder backend.
"""

from api.routes import router

__all__ = ["router"]
