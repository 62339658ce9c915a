from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from .audit import Action, AuditTrail
from .auth import AccessGate, AllowList
from .config import INT32_MAX, INT32_MIN, Settings, load_settings
from .ledger import LedgerStore, PersistenceError, ValidationRejected, load_ledger
from .logging import RequestLogMiddleware, bind, unbind
from .metrics import REQUEST_LATENCY, REQUESTS, route_label

_log = logging.getLogger("budget.http")

# Routes behind the allowlist. OPTIONS on these short-circuits before auth.
_GATED_PATHS = frozenset({"/get", "/set", "/spend", "/set_budget"})

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


# ---------------------------------------------------------------------------
# Pydantic I/O models
# ---------------------------------------------------------------------------


class AmountRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: int = Field(strict=True, ge=INT32_MIN, le=INT32_MAX)


class BudgetRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    budget: int = Field(strict=True, ge=INT32_MIN, le=INT32_MAX)


class LedgerResponse(BaseModel):
    balance: int
    budget: int


# ---------------------------------------------------------------------------
# Service context
# ---------------------------------------------------------------------------


@dataclass
class ServiceContext:
    """
    Everything a handler needs, built once at startup and attached to
    ``app.state.context``.
    """

    settings: Settings
    store: LedgerStore
    gate: AccessGate
    audit: AuditTrail

    def close(self) -> None:
        self.audit.close()


def build_context(settings: Settings) -> ServiceContext:
    """
    Open the audit sinks, load the allowlist and the ledger.

    Any failure here is fatal for the process: the service never runs
    without its audit trail, its allowlist, or a trustworthy ledger.
    """
    audit = AuditTrail.open(
        settings.transaction_log_path,
        settings.unauthorized_log_path,
        sync_on_write=settings.audit_sync_on_write,
    )
    try:
        allowlist = AllowList.from_file(settings.users_file)
        store = LedgerStore(
            settings.data_file,
            max_balance=settings.max_balance,
            spend_limit=settings.spend_limit,
        )
        load_ledger(store, settings.corrupt_state_policy)
    except BaseException:
        audit.close()
        raise

    _log.info(
        "ledger loaded",
        extra={
            "users": len(allowlist),
            "file": settings.data_file,
            "balance": store.snapshot().balance,
            "budget": store.snapshot().budget,
        },
    )
    return ServiceContext(
        settings=settings,
        store=store,
        gate=AccessGate(allowlist, audit),
        audit=audit,
    )


def _remote_addr(request: Request) -> str:
    if request.client is None:
        return ""
    return f"{request.client.host}:{request.client.port}"


# ---------------------------------------------------------------------------
# Gate middleware
# ---------------------------------------------------------------------------


class LedgerGateMiddleware(BaseHTTPMiddleware):
    """
    Allowlist check + CORS for the ledger routes.

    - OPTIONS returns 200 with an empty body and is never authorized or
      logged.
    - Everything else needs an Authorization header naming an allowlisted
      user; otherwise the attempt is audit-logged and answered with 401.
    - The authorized user is stored on ``request.state.user``.
    """

    async def dispatch(self, request: Request, call_next):
        if request.url.path not in _GATED_PATHS:
            return await call_next(request)

        if request.method == "OPTIONS":
            return Response(status_code=200, headers=_CORS_HEADERS)

        ctx: ServiceContext = request.app.state.context
        result = await run_in_threadpool(
            ctx.gate.authorize,
            request.headers.get("authorization", ""),
            _remote_addr(request),
        )
        if not result.ok:
            return PlainTextResponse("Unauthorized", status_code=401, headers=_CORS_HEADERS)

        request.state.user = result.user
        token = bind(user=result.user)
        try:
            response = await call_next(request)
        finally:
            unbind(token)
        response.headers.update(_CORS_HEADERS)
        return response


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    """
    Build the budget HTTP surface:

    - GET /get, POST /set, POST /spend, POST /set_budget behind the allowlist;
    - /healthz and /metrics for operations.

    When no context is given one is built from load_settings().
    """
    ctx = context if context is not None else build_context(load_settings())
    settings = ctx.settings

    app = FastAPI(
        title="budget",
        version=settings.version,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.context = ctx

    # Innermost first: body size guard, gate, metrics, then request logs.
    # Gated requests are authorized before their body size is checked.
    @app.middleware("http")
    async def body_size_guard(request: Request, call_next):
        limit = settings.max_body_bytes
        cl = request.headers.get("content-length")
        if cl is not None:
            try:
                cl_v = int(cl)
            except ValueError:
                return PlainTextResponse("Invalid content-length", status_code=400)
            if cl_v > limit:
                return PlainTextResponse("Body too large", status_code=413)
        elif request.method in ("POST", "PUT", "PATCH"):
            # No length up front (chunked): buffer it; the body is replayed
            # to the route.
            if len(await request.body()) > limit:
                return PlainTextResponse("Body too large", status_code=413)
        return await call_next(request)

    app.add_middleware(LedgerGateMiddleware)

    @app.middleware("http")
    async def request_metrics(request: Request, call_next):
        t0 = time.perf_counter()
        route = route_label(request.url.path)
        response = await call_next(request)
        REQUEST_LATENCY.labels(route=route).observe(max(0.0, time.perf_counter() - t0))
        REQUESTS.labels(route=route, status=str(response.status_code)).inc()
        return response

    app.add_middleware(RequestLogMiddleware)

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> Response:
        return PlainTextResponse("Invalid body", status_code=400)

    @app.exception_handler(ValidationRejected)
    async def _rejected(request: Request, exc: ValidationRejected) -> Response:
        _log.info("ledger request rejected", extra={"reason": exc.reason})
        return PlainTextResponse(str(exc), status_code=400)

    @app.exception_handler(PersistenceError)
    async def _persist_failed(request: Request, exc: PersistenceError) -> Response:
        _log.error("error saving data", exc_info=exc)
        return PlainTextResponse("Internal Server Error", status_code=500)

    # -----------------------------------------------------------------------
    # Operational endpoints
    # -----------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": settings.version,
            "config_hash": settings.config_hash(),
            "config_origin": settings.config_origin,
        }

    if settings.metrics_enable:

        @app.get("/metrics")
        def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # -----------------------------------------------------------------------
    # Ledger endpoints
    # -----------------------------------------------------------------------

    def _committed(user: str, action: Action, amount: int, balance: int, budget: int) -> None:
        ctx.audit.log_transaction(user, action, amount)
        _log.info(
            "ledger.mutation",
            extra={
                "user": user,
                "action": action.value,
                "amount": amount,
                "balance": balance,
                "budget": budget,
            },
        )

    @app.get("/get", response_model=LedgerResponse)
    def get_ledger() -> LedgerResponse:
        state = ctx.store.snapshot()
        return LedgerResponse(balance=state.balance, budget=state.budget)

    @app.post("/set", response_class=PlainTextResponse)
    def set_balance(req: AmountRequest, request: Request) -> PlainTextResponse:
        state = ctx.store.set_balance(req.amount)
        _committed(request.state.user, Action.SET, req.amount, state.balance, state.budget)
        return PlainTextResponse(str(state.balance))

    @app.post("/spend", response_class=PlainTextResponse)
    def spend(req: AmountRequest, request: Request) -> PlainTextResponse:
        state = ctx.store.spend(req.amount)
        _committed(request.state.user, Action.SPEND, req.amount, state.balance, state.budget)
        return PlainTextResponse(str(state.balance))

    @app.post("/set_budget", response_model=LedgerResponse)
    def set_budget(req: BudgetRequest, request: Request) -> LedgerResponse:
        state = ctx.store.set_budget(req.budget)
        _committed(request.state.user, Action.BUDGET_CHANGE, req.budget, state.balance, state.budget)
        return LedgerResponse(balance=state.balance, budget=state.budget)

    return app
