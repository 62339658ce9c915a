# FILE: budget/ledger.py
from __future__ import annotations

"""
Budget ledger: one balance/budget pair, persisted to a fixed-layout file.

State file layout:
  - current: 8 bytes, little-endian int32 balance then int32 budget;
  - legacy:  4 bytes, little-endian int32 balance. Migrated on first load
             (budget defaults to 0) and rewritten in the current layout.

Every read-modify-write runs under one lock that also covers the write to
disk. Mutations are staged, persisted, and only then committed in memory,
so a failed write never leaves memory and disk disagreeing.

Writes go to "<path>.tmp", are fsynced and renamed over the state file; the
containing directory is then fsynced. Once the rename succeeds the write
counts as done, so a directory fsync error is logged and counted only.
"""

import dataclasses
import logging
import os
import struct
import threading
import time
from typing import Callable, Optional

from .config import DEFAULT_MAX_BALANCE, DEFAULT_SPEND_LIMIT, INT32_MAX, INT32_MIN
from .metrics import (
    BALANCE,
    BUDGET,
    LEDGER_MUTATIONS,
    LEDGER_REJECTED,
    PERSIST_DIR_SYNC_FAIL,
    PERSIST_FAIL,
    PERSIST_LATENCY,
)

_log = logging.getLogger(__name__)

_CURRENT = struct.Struct("<ii")
_LEGACY = struct.Struct("<i")


# ---------- Exceptions ----------


class LedgerError(RuntimeError):
    pass


class CorruptStateError(LedgerError):
    def __init__(self, path: str, length: int):
        super().__init__(f"invalid data length in {path}: {length}")
        self.path = path
        self.length = length


class PersistenceError(LedgerError):
    pass


class ValidationRejected(LedgerError):
    """
    Request is well-formed but outside policy. ``reason`` is a short metric
    label; ``str(exc)`` is the text returned to the client.
    """

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


# ---------- State ----------


@dataclasses.dataclass(frozen=True)
class LedgerState:
    balance: int = 0
    budget: int = 0

    def encode(self) -> bytes:
        return _CURRENT.pack(self.balance, self.budget)

    @classmethod
    def decode(cls, data: bytes, *, path: str = "<memory>") -> "LedgerState":
        if len(data) == _CURRENT.size:
            balance, budget = _CURRENT.unpack(data)
            return cls(balance=balance, budget=budget)
        if len(data) == _LEGACY.size:
            (balance,) = _LEGACY.unpack(data)
            return cls(balance=balance, budget=0)
        raise CorruptStateError(path, len(data))

    def as_dict(self) -> dict:
        return {"balance": self.balance, "budget": self.budget}


def _in_int32(v: int) -> bool:
    return INT32_MIN <= v <= INT32_MAX


# ---------- Disk helpers ----------


def _fsync_dir_for_path(path: str) -> None:
    dirname = os.path.dirname(os.path.abspath(path))
    fd = os.open(dirname, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _sync_dir_after_rename(path: str) -> None:
    # The rename already happened; the new file is what later reads see.
    try:
        _fsync_dir_for_path(path)
    except OSError:
        PERSIST_DIR_SYNC_FAIL.inc()
        _log.warning("directory fsync failed after rename", extra={"file": path}, exc_info=True)


def _write_atomic(path: str, data: bytes) -> None:
    """
    Replace ``path`` with ``data`` via "<path>.tmp" + fsync + rename.

    Raises OSError only if the rename did not happen. A failed directory
    fsync after the rename is counted and logged, not raised.
    """
    tmp_path = path + ".tmp"
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        try:
            view = memoryview(data)
            while view:
                n = os.write(fd, view)
                view = view[n:]
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp_path, path)
    except OSError:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            _log.warning("could not remove %s", tmp_path, exc_info=True)
        raise
    _sync_dir_after_rename(path)


# ---------- Store ----------


class LedgerStore:
    """
    Owner of the in-memory LedgerState and its state file.

    Thread safety:
      - snapshot(), save() and the mutation methods share one lock, so
        operations are fully serialized and a reader never observes a
        half-applied mutation.
    """

    def __init__(
        self,
        path: str,
        *,
        max_balance: int = DEFAULT_MAX_BALANCE,
        spend_limit: int = DEFAULT_SPEND_LIMIT,
    ):
        self.path = path
        self.max_balance = int(max_balance)
        self.spend_limit = int(spend_limit)
        self._lock = threading.Lock()
        self._state = LedgerState()

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #

    def load(self) -> None:
        """
        Read the state file.

        Missing file -> {0, 0}. Legacy 4-byte file -> {balance, 0}, rewritten
        as 8 bytes before returning. Any other length raises
        CorruptStateError and leaves the in-memory state untouched.
        """
        with self._lock:
            try:
                with open(self.path, "rb") as f:
                    data = f.read()
            except FileNotFoundError:
                self._state = LedgerState()
                self._publish(self._state)
                return
            except OSError as exc:
                raise LedgerError(f"cannot read {self.path}: {exc}") from exc

            state = LedgerState.decode(data, path=self.path)
            if len(data) == _LEGACY.size:
                self._persist(state)
                _log.info(
                    "migrated state file from 4 bytes to 8 bytes (added default budget 0)",
                    extra={"file": self.path, "balance": state.balance},
                )
            self._state = state
            self._publish(state)

    def save(self) -> None:
        with self._lock:
            self._persist(self._state)

    def quarantine(self) -> str:
        """
        Move an unreadable state file aside and reset to {0, 0}.

        Returns the quarantine path. The bad file is kept for inspection and
        is never overwritten by later saves.
        """
        with self._lock:
            stamp = int(time.time())
            target = f"{self.path}.corrupt-{stamp}"
            n = 0
            while os.path.exists(target):
                n += 1
                target = f"{self.path}.corrupt-{stamp}.{n}"
            try:
                os.replace(self.path, target)
            except OSError as exc:
                raise LedgerError(f"cannot quarantine {self.path}: {exc}") from exc
            _sync_dir_after_rename(self.path)
            self._state = LedgerState()
            self._publish(self._state)
            return target

    def _persist(self, state: LedgerState) -> None:
        # caller holds self._lock
        t0 = time.perf_counter()
        try:
            _write_atomic(self.path, state.encode())
        except OSError as exc:
            PERSIST_FAIL.inc()
            raise PersistenceError(f"cannot write {self.path}: {exc}") from exc
        finally:
            PERSIST_LATENCY.observe(max(0.0, time.perf_counter() - t0))

    @staticmethod
    def _publish(state: LedgerState) -> None:
        BALANCE.set(state.balance)
        BUDGET.set(state.budget)

    # ------------------------------------------------------------------ #
    # Exclusive section                                                  #
    # ------------------------------------------------------------------ #

    def snapshot(self) -> LedgerState:
        with self._lock:
            return self._state

    def apply(self, action: str, mutate: Callable[[LedgerState], LedgerState]) -> LedgerState:
        """
        Run one read-modify-write as a single unit.

        Under the lock: stage ``mutate(current)``, check the resulting state
        against the ledger invariants, persist it, then commit it. Raises
        ValidationRejected (nothing written) or PersistenceError (memory
        unchanged).
        """
        with self._lock:
            staged = mutate(self._state)
            self._check(staged)
            self._persist(staged)
            self._state = staged
        LEDGER_MUTATIONS.labels(action=action).inc()
        self._publish(staged)
        return staged

    def _check(self, staged: LedgerState) -> None:
        if not INT32_MIN <= staged.balance <= self.max_balance:
            raise self._reject("balance_out_of_range", "Resulting balance out of range")
        if not 0 <= staged.budget <= self.max_balance:
            raise self._reject("invalid_budget", "Invalid budget amount")

    @staticmethod
    def _reject(reason: str, message: str) -> ValidationRejected:
        LEDGER_REJECTED.labels(reason=reason).inc()
        return ValidationRejected(reason, message)

    # ------------------------------------------------------------------ #
    # Operations                                                         #
    # ------------------------------------------------------------------ #

    def set_balance(self, amount: int) -> LedgerState:
        if not _in_int32(amount) or amount > self.max_balance:
            raise self._reject("amount_exceeds_limit", "Amount exceeds limit")
        return self.apply("SET", lambda s: dataclasses.replace(s, balance=amount))

    def spend(self, amount: int) -> LedgerState:
        if amount > self.spend_limit or amount < -self.spend_limit:
            raise self._reject("transaction_too_large", "Transaction too large")
        return self.apply("SPEND", lambda s: dataclasses.replace(s, balance=s.balance - amount))

    def set_budget(self, budget: int) -> LedgerState:
        """
        Set the budget and move the balance by the same difference: raising
        the budget by d credits d, lowering it debits.
        """
        if budget < 0 or budget > self.max_balance:
            raise self._reject("invalid_budget", "Invalid budget amount")
        return self.apply(
            "BUDGET_CHANGE",
            lambda s: LedgerState(balance=s.balance + (budget - s.budget), budget=budget),
        )


def load_ledger(store: LedgerStore, policy: str = "fatal") -> Optional[str]:
    """
    Load ``store`` applying the corrupt-state policy.

    "fatal" re-raises CorruptStateError. "quarantine" moves the bad file
    aside, starts from {0, 0} and returns the quarantine path.
    """
    try:
        store.load()
        return None
    except CorruptStateError as exc:
        if policy != "quarantine":
            raise
        target = store.quarantine()
        _log.warning(
            "state file corrupt; quarantined and starting at 0",
            extra={"file": exc.path, "length": exc.length, "quarantine": target},
        )
        return target
