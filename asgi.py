"""
asgi.py -- ASGI entry point for Inkwell Auth.

Run with:  uvicorn asgi:app --reload

The application itself is assembled in api/main.py; this module only exposes
it under the conventional name so process managers need not know the layout.
"""

from api.main import app

__all__ = ["app"]
