"""
Shared-secret authentication middleware for the orchestrator API.

Mutating requests (job / timeline creation and cancellation) require an
X-Worker-Secret header matching WORKER_SHARED_SECRET. Reads stay open so
clients can poll status without the secret.
"""

import os
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated mutating requests."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None):
        super().__init__(app)
        self.secret = secret if secret is not None else os.environ.get("WORKER_SHARED_SECRET", "")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or request.method not in PROTECTED_METHODS:
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
