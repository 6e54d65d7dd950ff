from __future__ import annotations
import logging
import time
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from ..observability.logging import get_request_id, request_id_var
from ..config import get_settings

S = get_settings()
log = logging.getLogger("otp_auth.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = get_request_id(request)
        token = request_id_var.set(rid)
        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                dur_ms = int((time.perf_counter() - start) * 1000)
                log.error("unhandled_error", extra={
                    "extra": f"path={request.url.path} method={request.method} ms={dur_ms}",
                })
                raise

            dur_ms = int((time.perf_counter() - start) * 1000)
            response.headers[S.REQUEST_ID_HEADER] = rid
            log.info("request", extra={
                "extra": f"path={request.url.path} method={request.method} status={response.status_code} ms={dur_ms}",
            })
            return response
        finally:
            request_id_var.reset(token)
