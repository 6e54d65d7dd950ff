from __future__ import annotations
import logging
import sys
import uuid
from contextvars import ContextVar
from pythonjsonlogger.json import JsonFormatter
from fastapi import Request
from ..config import get_settings

S = get_settings()

# set per request by RequestContextMiddleware; empty outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIdFilter(logging.Filter):
    """Stamps the current request id onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        if not hasattr(record, "extra"):
            record.extra = ""
        return True


def setup_logging() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter("%(levelname)s %(name)s %(message)s %(asctime)s %(request_id)s %(extra)s"))
    handler.addFilter(RequestIdFilter())
    root.addHandler(handler)
    root.setLevel(S.LOG_LEVEL)

    logging.getLogger("uvicorn.access").setLevel("WARNING")


def get_request_id(req: Request) -> str:
    return req.headers.get(S.REQUEST_ID_HEADER) or uuid.uuid4().hex
