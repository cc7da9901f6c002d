"""
ASGI entrypoint.
Re-exports the FastAPI app from server.py so uvicorn can load it as main:app
"""

from server import app

__all__ = ["app"]
