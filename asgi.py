"""
asgi.py -- ASGI entry point for Gatekeeper.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --proxy-headers

Kept separate from api/main.py so process managers point at one stable
import path while api/main.py stays importable by tests.
"""

from api.main import app

__all__ = ["app"]
