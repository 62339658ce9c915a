from __future__ import annotations

"""
Append-only audit trail for the budget ledger.

Two independent comma-separated streams are kept on disk:

    transactions.csv   date,time,user,ACTION,amount
    unauthorized.log   date,time,user,remote

Each stream is owned by one LogSink. A sink holds its own lock across the
write and the flush, so lines from concurrent request threads never
interleave and contention on one stream never blocks the other.

The service only ever appends; nothing here reads the logs back. Free-text
fields (user, remote) are percent-escaped for "%", ",", CR and LF, so every
line keeps its column count.
"""

import dataclasses
import datetime as _dt
import enum
import logging
import os
import threading
from typing import Callable, Optional, TextIO

from .metrics import AUDIT_WRITE_FAIL

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Action(str, enum.Enum):
    SET = "SET"
    SPEND = "SPEND"
    BUDGET_CHANGE = "BUDGET_CHANGE"


def _date_time(now: _dt.datetime) -> tuple:
    return now.strftime("%Y-%m-%d"), now.strftime("%H:%M:%S")


_FIELD_ESCAPES = str.maketrans({"%": "%25", ",": "%2C", "\r": "%0D", "\n": "%0A"})


def _field(value: str) -> str:
    # Caller-supplied text must not add columns or lines.
    return value.translate(_FIELD_ESCAPES)


@dataclasses.dataclass(frozen=True)
class TransactionRecord:
    date: str
    time: str
    user: str
    action: Action
    amount: int

    @classmethod
    def at(cls, now: _dt.datetime, user: str, action: Action, amount: int) -> "TransactionRecord":
        d, t = _date_time(now)
        return cls(date=d, time=t, user=user, action=action, amount=int(amount))

    def to_line(self) -> str:
        return f"{self.date},{self.time},{_field(self.user)},{self.action.value},{self.amount}\n"


@dataclasses.dataclass(frozen=True)
class UnauthorizedRecord:
    date: str
    time: str
    user: str
    remote: str

    @classmethod
    def at(cls, now: _dt.datetime, user: str, remote: str) -> "UnauthorizedRecord":
        d, t = _date_time(now)
        return cls(date=d, time=t, user=user, remote=remote)

    def to_line(self) -> str:
        return f"{self.date},{self.time},{_field(self.user)},{_field(self.remote)}\n"


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class LogSink:
    """
    Serialized append-only writer for one log stream.

    Thread safety:
      - write() and close() are safe for concurrent use.

    Crash safety:
      - every line is flushed before write() returns;
      - with sync_on_write, fsync(fd) follows each flush.
    """

    def __init__(self, path: str, fh: TextIO, *, sync_on_write: bool = False):
        self.path = path
        self._fh: Optional[TextIO] = fh
        self._sync = bool(sync_on_write)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: str, *, sync_on_write: bool = False) -> "LogSink":
        """
        Open (or create) ``path`` for appending. Never truncates.

        Raises OSError if the file cannot be opened; callers treat that as
        fatal at startup.
        """
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = open(path, "a", encoding="utf-8")
        return cls(path, fh, sync_on_write=sync_on_write)

    @property
    def closed(self) -> bool:
        return self._fh is None

    def write(self, line: str) -> None:
        with self._lock:
            if self._fh is None:
                raise RuntimeError(f"LogSink.write() after close(): {self.path}")
            self._fh.write(line)
            self._fh.flush()
            if self._sync:
                os.fsync(self._fh.fileno())

    def close(self) -> None:
        with self._lock:
            if self._fh is None:
                return
            try:
                self._fh.flush()
            finally:
                self._fh.close()
                self._fh = None


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditTrail:
    """
    The pair of sinks the handlers and the gate write to.

    A failed write is logged and counted, never raised: an audit I/O problem
    must not fail a ledger mutation that has already been committed.
    """

    def __init__(
        self,
        transactions: LogSink,
        unauthorized: LogSink,
        *,
        clock: Callable[[], _dt.datetime] = _dt.datetime.now,
    ):
        self.transactions = transactions
        self.unauthorized = unauthorized
        self._clock = clock

    @classmethod
    def open(
        cls,
        transaction_path: str,
        unauthorized_path: str,
        *,
        sync_on_write: bool = False,
    ) -> "AuditTrail":
        tx = LogSink.open(transaction_path, sync_on_write=sync_on_write)
        try:
            ua = LogSink.open(unauthorized_path, sync_on_write=sync_on_write)
        except OSError:
            tx.close()
            raise
        return cls(tx, ua)

    def _emit(self, sink: LogSink, stream: str, line: str) -> bool:
        try:
            sink.write(line)
            return True
        except OSError:
            AUDIT_WRITE_FAIL.labels(stream=stream).inc()
            _log.error("audit write failed", extra={"stream": stream, "file": sink.path}, exc_info=True)
            return False

    def log_transaction(self, user: str, action: Action, amount: int) -> bool:
        rec = TransactionRecord.at(self._clock(), user, action, amount)
        return self._emit(self.transactions, "transactions", rec.to_line())

    def log_unauthorized(self, user: str, remote: str) -> bool:
        rec = UnauthorizedRecord.at(self._clock(), user, remote)
        return self._emit(self.unauthorized, "unauthorized", rec.to_line())

    def close(self) -> None:
        try:
            self.transactions.close()
        finally:
            self.unauthorized.close()
