"""
asgi.py -- ASGI entry point for the portal.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers and tests import the same
module path regardless of which layers are mounted.
"""

from api.main import app

__all__ = ["app"]
