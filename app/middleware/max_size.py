from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from fastapi import Request

BODY_METHODS = {"POST", "PUT", "PATCH"}

class MaxSizeMiddleware(BaseHTTPMiddleware):
    """Reject bodies whose declared Content-Length exceeds `max_bytes` (413)."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        if request.method in BODY_METHODS:
            declared = request.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > self.max_bytes:
                # return, don't raise: exceptions here bypass the app's handlers
                return JSONResponse({"detail": "payload too large"}, status_code=413)
        return await call_next(request)
