import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

_LOGGER = logging.getLogger("dispatch_service.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        user_sub = request.headers.get("X-User-Sub")

        line = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "user_sub": user_sub,
        }

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            line["status"] = 500
            line["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
            _LOGGER.error(json.dumps(line))
            raise

        response.headers["X-Request-Id"] = request_id
        line["status"] = response.status_code
        line["duration_ms"] = round((time.perf_counter() - start) * 1000, 2)
        _LOGGER.info(json.dumps(line))
        return response
