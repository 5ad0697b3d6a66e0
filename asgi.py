"""
asgi.py -- Application assembly for kcfg-vex.

Keeps the server entry point separate from api/main.py so deployment tooling
has one stable import path regardless of how the api/ package grows.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
