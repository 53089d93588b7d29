# app/middleware/api_key.py
from __future__ import annotations

import hmac
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..settings import settings

log = logging.getLogger(__name__)

# Admin routes; the chat API, websocket and Telegram webhook stay public
PROTECTED_PATH_PREFIXES: tuple[str, ...] = (
    "/ingest",
    "/debug",
)

def _is_protected(path: str) -> bool:
    return any(path.startswith(p) for p in PROTECTED_PATH_PREFIXES)

class APIKeyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if not _is_protected(request.url.path):
            return await call_next(request)

        expected = settings.api_key
        if not expected:
            log.warning("API key not configured; refusing admin request to %s", request.url.path)
            return JSONResponse(status_code=503, content={"detail": "Admin API disabled"})

        provided = request.headers.get("x-api-key") or ""
        if not hmac.compare_digest(provided, expected):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing API key"})

        return await call_next(request)
