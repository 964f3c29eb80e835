"""
asgi.py -- ASGI entry point for subgate.

Run with:  uvicorn asgi:app --host 0.0.0.0 --port 8080
           python main.py serve

The dashboard bundle and the proxy catch-all are both registered inside
api/main.py, so this module only re-exports the assembled app.
"""

from api.main import app

__all__ = ["app"]
