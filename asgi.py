"""
asgi.py -- Application assembly for retail-auth.

The UI that consumes this API is a separate deployment; this module only
exposes the API app under the name uvicorn expects.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
