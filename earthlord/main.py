from __future__ import annotations

# Entrypoint module for ASGI servers:
#   uvicorn earthlord.main:app --host 0.0.0.0 --port 8000
from earthlord.api.routes import app

__all__ = ["app"]
