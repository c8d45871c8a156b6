"""
asgi.py -- ASGI entry point for the identity service.

Run with:  uvicorn asgi:app --reload

The application, its routers and its lifespan live in api/main.py; this module
only gives servers a stable import path.
"""

from api.main import app

__all__ = ["app"]
