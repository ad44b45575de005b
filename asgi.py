"""
asgi.py -- ASGI entry point for the GSO auth service.

Run with:  uvicorn asgi:app --reload

api/main.py owns the application; this module only re-exports it so process
managers have a stable import path.
"""

from api.main import app

__all__ = ["app"]
