# FILE: budget/logging.py
from __future__ import annotations

"""
JSON log lines for the budget service.

Each record becomes one compact JSON object:

    {"schema": "budget.log.v1", "service": "budget", "host": ..., "ts": ...,
     "lvl": "INFO", "logger": "budget.http", "msg": "ledger.mutation",
     "req_id": ..., "user": "alice", "action": "SPEND", "amount": 250,
     "balance": 750, "budget": 0, "meta": {...}}

Ledger and request fields are lifted to the top level, taken from the
record's ``extra=`` first and from the request context second. The context
is filled by RequestLogMiddleware (req_id, path, method) and by the access
gate (user). Any other ``extra=`` key goes under "meta".
"""

import contextvars
import datetime as _dt
import json
import logging
import socket
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional, TextIO

SCHEMA = "budget.log.v1"
SERVICE = "budget"
_HOST = socket.gethostname()

# Longest string value kept in a log line.
_FIELD_LIMIT = 4096

_TOP_LEVEL_FIELDS = (
    "req_id",
    "user",
    "path",
    "method",
    "remote",
    "status",
    "latency_ms",
    "action",
    "amount",
    "balance",
    "budget",
)

# Attributes every LogRecord carries; everything else came from extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_request_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "budget_request_ctx", default={}
)


def bind(**fields: Any) -> contextvars.Token:
    """
    Add fields to the request context. None values are skipped.

    Returns the token to hand to ``unbind`` once the scope ends.
    """
    merged = dict(_request_ctx.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    return _request_ctx.set(merged)


def unbind(token: contextvars.Token) -> None:
    _request_ctx.reset(token)


def bound() -> Dict[str, Any]:
    return dict(_request_ctx.get())


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _FIELD_LIMIT:
        return value[:_FIELD_LIMIT] + "...<truncated>"
    return value


def _utc_ts(created: float) -> str:
    ts = _dt.datetime.fromtimestamp(created, _dt.timezone.utc)
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = _request_ctx.get()
        line: Dict[str, Any] = {
            "schema": SCHEMA,
            "service": SERVICE,
            "host": _HOST,
            "ts": _utc_ts(record.created),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _clip(record.getMessage()),
        }

        attrs = vars(record)
        for name in _TOP_LEVEL_FIELDS:
            value = attrs.get(name)
            if value is None:
                value = ctx.get(name)
            if value is not None:
                line[name] = _clip(value)

        meta = {
            k: _clip(v)
            for k, v in attrs.items()
            if k not in _RECORD_ATTRS and k not in _TOP_LEVEL_FIELDS and not k.startswith("_")
        }
        if meta:
            line["meta"] = meta

        if record.exc_info and record.exc_info[0] is not None:
            etype, evalue, tb = record.exc_info
            line["error"] = {
                "type": etype.__name__,
                "message": _clip(str(evalue)),
                "stack": _clip("".join(traceback.format_exception(etype, evalue, tb))),
            }

        return json.dumps(line, ensure_ascii=False, separators=(",", ":"), default=str)


def configure_json_logging(level: str = "INFO", *, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Send the root logger to ``stream`` (stderr by default) as JSON lines.

    uvicorn's loggers lose their own handlers and propagate to root, so the
    server's lines share the same format.
    """
    lvl = logging.getLevelName((level or "INFO").upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(lvl)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
    return root


def _request_id(scope) -> str:
    for key, value in scope.get("headers") or ():
        if key.lower() == b"x-request-id" and value:
            return value.decode("latin-1")[:64]
    return uuid.uuid4().hex[:16]


class RequestLogMiddleware:
    """
    ASGI middleware: binds req_id/path/method for the request, echoes the
    request id in ``x-request-id`` and logs one "http.finish" line with
    status and latency. Bodies are never logged.
    """

    def __init__(self, app, *, logger_name: str = "budget.http"):
        self.app = app
        self.log = logging.getLogger(logger_name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        rid = _request_id(scope)
        token = bind(req_id=rid, path=scope.get("path"), method=scope.get("method"))
        started = time.perf_counter()
        status = None

        async def send_with_id(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
                headers = list(message.get("headers") or [])
                headers.append((b"x-request-id", rid.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        finally:
            self.log.info(
                "http.finish",
                extra={"status": status, "latency_ms": round((time.perf_counter() - started) * 1000.0, 3)},
            )
            unbind(token)
