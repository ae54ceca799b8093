import json
import logging
import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from wallet_shared import mask_phone

logger = logging.getLogger("accounts.request")

_PHONE_IN_PATH = re.compile(r"(?<=/exists/)[^/]+")


def _loggable_path(path: str) -> str:
    return _PHONE_IN_PATH.sub(lambda m: mask_phone(m.group(0)), path)


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = req_id
        start = time.time()
        response: Response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)
        response.headers["X-Request-ID"] = req_id
        log = {
            "request_id": req_id,
            "method": request.method,
            "path": _loggable_path(request.url.path),
            "status": response.status_code,
            "duration_ms": duration_ms,
        }
        logger.info(json.dumps(log))
        return response
