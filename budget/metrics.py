# FILE: budget/metrics.py
# Prometheus instruments for the budget service.
#
# Instruments are registered once at import time on the default registry so
# that building several apps in one process (tests, reloads) never trips the
# duplicate-timeseries check. The HTTP layer exposes them on /metrics.
#
# Label sets are small and fixed: routes are the four ledger paths plus the
# operational ones, reasons are a closed vocabulary.

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUESTS = Counter(
    "budget_requests_total",
    "HTTP requests",
    ["route", "status"],
)
REQUEST_LATENCY = Histogram(
    "budget_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
    buckets=(0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.2, 0.5, 1.0),
)

AUTH_OK = Counter("budget_auth_ok_total", "Authorized requests")
AUTH_FAIL = Counter("budget_auth_fail_total", "Rejected requests", ["reason"])

LEDGER_MUTATIONS = Counter(
    "budget_ledger_mutations_total",
    "Committed ledger mutations",
    ["action"],
)
LEDGER_REJECTED = Counter(
    "budget_ledger_rejected_total",
    "Ledger operations rejected by validation",
    ["reason"],
)
PERSIST_FAIL = Counter(
    "budget_persist_fail_total",
    "State file writes that failed",
)
PERSIST_LATENCY = Histogram(
    "budget_persist_latency_seconds",
    "State file write latency (write + fsync + rename + dir fsync)",
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.010, 0.020, 0.050, 0.1, 0.5),
)
PERSIST_DIR_SYNC_FAIL = Counter(
    "budget_persist_dir_sync_fail_total",
    "Directory fsyncs that failed after the state file was renamed into place",
)
AUDIT_WRITE_FAIL = Counter(
    "budget_audit_write_fail_total",
    "Audit lines that could not be written",
    ["stream"],
)

BALANCE = Gauge("budget_balance_minor_units", "Current balance in minor units")
BUDGET = Gauge("budget_budget_minor_units", "Current budget in minor units")


def route_label(path: str) -> str:
    if path in ("/get", "/set", "/spend", "/set_budget", "/healthz", "/metrics"):
        return path
    return "other"
