import os
import struct
import threading

import pytest
from prometheus_client import REGISTRY

from budget import ledger
from budget.config import INT32_MIN
from budget.ledger import (
    CorruptStateError,
    LedgerError,
    LedgerState,
    LedgerStore,
    PersistenceError,
    ValidationRejected,
    load_ledger,
)

MAX_BALANCE = 2_000_000_000
LIMIT = 100_000_000


def _read_state(path):
    with open(path, "rb") as f:
        data = f.read()
    assert len(data) == 8
    return struct.unpack("<ii", data)


@pytest.fixture
def path(tmp_path):
    return str(tmp_path / "budget.dat")


@pytest.fixture
def store(path):
    s = LedgerStore(path)
    s.load()
    return s


def test_encode_uses_little_endian_twos_complement():
    assert LedgerState(balance=-1, budget=0).encode() == b"\xff\xff\xff\xff\x00\x00\x00\x00"
    assert LedgerState(balance=1, budget=258).encode() == b"\x01\x00\x00\x00\x02\x01\x00\x00"


def test_missing_file_starts_at_zero(store, path):
    assert store.snapshot() == LedgerState(0, 0)
    assert not os.path.exists(path)


def test_current_format_loads(path):
    with open(path, "wb") as f:
        f.write(struct.pack("<ii", -2500, 10000))
    s = LedgerStore(path)
    s.load()
    assert s.snapshot() == LedgerState(balance=-2500, budget=10000)


def test_legacy_file_is_migrated(path):
    with open(path, "wb") as f:
        f.write(struct.pack("<i", 123456))
    s = LedgerStore(path)
    s.load()
    assert s.snapshot() == LedgerState(balance=123456, budget=0)
    assert os.path.getsize(path) == 8
    assert _read_state(path) == (123456, 0)

    # a second load sees the current layout
    s2 = LedgerStore(path)
    s2.load()
    assert s2.snapshot() == LedgerState(balance=123456, budget=0)


def test_legacy_negative_balance_survives_migration(path):
    with open(path, "wb") as f:
        f.write(struct.pack("<i", -42))
    s = LedgerStore(path)
    s.load()
    assert s.snapshot().balance == -42
    assert _read_state(path) == (-42, 0)


@pytest.mark.parametrize("length", [0, 3, 5, 7, 9, 16])
def test_unexpected_length_is_corrupt(path, length):
    with open(path, "wb") as f:
        f.write(b"\x01" * length)
    s = LedgerStore(path)
    with pytest.raises(CorruptStateError) as ei:
        s.load()
    assert ei.value.length == length
    assert s.snapshot() == LedgerState(0, 0)
    # the file is left alone
    assert os.path.getsize(path) == length


def test_unreadable_path_is_ledger_error(tmp_path):
    d = tmp_path / "adir"
    d.mkdir()
    s = LedgerStore(str(d))
    with pytest.raises(LedgerError):
        s.load()


def test_corrupt_policy_fatal_reraises(path):
    with open(path, "wb") as f:
        f.write(b"\x00" * 5)
    with pytest.raises(CorruptStateError):
        load_ledger(LedgerStore(path), "fatal")


def test_corrupt_policy_quarantine_moves_file_aside(path):
    bad = b"\x07" * 6
    with open(path, "wb") as f:
        f.write(bad)
    s = LedgerStore(path)
    target = load_ledger(s, "quarantine")

    assert target is not None and target.startswith(path + ".corrupt-")
    with open(target, "rb") as f:
        assert f.read() == bad
    assert not os.path.exists(path)
    assert s.snapshot() == LedgerState(0, 0)

    s.set_balance(700)
    assert _read_state(path) == (700, 0)
    with open(target, "rb") as f:
        assert f.read() == bad


def test_round_trip_after_every_operation(store, path):
    ops = [
        lambda: store.set_balance(5000),
        lambda: store.spend(1250),
        lambda: store.set_budget(10000),
        lambda: store.spend(-300),
        lambda: store.set_budget(2000),
        lambda: store.spend(9000),
        lambda: store.set_balance(-17),
    ]
    for op in ops:
        state = op()
        assert state == store.snapshot()
        assert _read_state(path) == (state.balance, state.budget)
    assert store.snapshot() == LedgerState(balance=-17, budget=2000)


def test_save_writes_current_state(store, path):
    store.save()
    assert _read_state(path) == (0, 0)


def test_no_side_file_left_behind(store, path):
    store.set_balance(1)
    assert not os.path.exists(path + ".tmp")


def test_set_budget_raise_credits_balance(store):
    store.set_budget(100)
    store.set_balance(500)
    state = store.set_budget(150)
    assert state == LedgerState(balance=550, budget=150)


def test_set_budget_lower_debits_balance(store):
    store.set_budget(100)
    store.set_balance(500)
    state = store.set_budget(40)
    assert state == LedgerState(balance=440, budget=40)


def test_set_budget_can_drive_balance_negative(store):
    store.set_budget(1000)
    store.set_balance(10)
    assert store.set_budget(0) == LedgerState(balance=-990, budget=0)


@pytest.mark.parametrize("budget", [-1, MAX_BALANCE + 1])
def test_set_budget_out_of_range_rejected(store, budget):
    with pytest.raises(ValidationRejected):
        store.set_budget(budget)
    assert store.snapshot() == LedgerState(0, 0)


def test_set_budget_rejected_when_balance_would_exceed_cap(store):
    store.set_balance(MAX_BALANCE)
    with pytest.raises(ValidationRejected) as ei:
        store.set_budget(10)
    assert ei.value.reason == "balance_out_of_range"
    assert store.snapshot() == LedgerState(balance=MAX_BALANCE, budget=0)


def test_set_accepts_cap_rejects_above(store):
    assert store.set_balance(MAX_BALANCE).balance == MAX_BALANCE
    with pytest.raises(ValidationRejected) as ei:
        store.set_balance(MAX_BALANCE + 1)
    assert str(ei.value) == "Amount exceeds limit"
    assert store.snapshot().balance == MAX_BALANCE


def test_spend_over_cap_is_noop(store, path):
    store.set_balance(1000)
    for amount in (LIMIT + 1, -LIMIT - 1):
        with pytest.raises(ValidationRejected) as ei:
            store.spend(amount)
        assert ei.value.reason == "transaction_too_large"
    assert store.snapshot().balance == 1000
    assert _read_state(path) == (1000, 0)


def test_spend_at_cap_is_allowed(store):
    assert store.spend(LIMIT).balance == -LIMIT
    assert store.spend(-LIMIT).balance == 0


def test_spend_may_overdraw(store):
    store.set_balance(50)
    assert store.spend(80).balance == -30


def test_spend_never_wraps(store):
    store.set_balance(MAX_BALANCE)
    with pytest.raises(ValidationRejected):
        store.spend(-1)

    store.set_balance(INT32_MIN)
    with pytest.raises(ValidationRejected):
        store.spend(1)
    assert store.snapshot().balance == INT32_MIN


def test_custom_caps(path):
    s = LedgerStore(path, max_balance=1000, spend_limit=10)
    s.load()
    with pytest.raises(ValidationRejected):
        s.set_balance(1001)
    with pytest.raises(ValidationRejected):
        s.spend(11)
    assert s.spend(10).balance == -10


def test_persist_failure_leaves_memory_unchanged(tmp_path):
    s = LedgerStore(str(tmp_path / "missing" / "budget.dat"))
    s.load()
    with pytest.raises(PersistenceError):
        s.set_balance(5)
    with pytest.raises(PersistenceError):
        s.set_budget(100)
    assert s.snapshot() == LedgerState(0, 0)


def test_concurrent_spends_are_serialized(store, path):
    store.set_balance(1000)
    n = 40
    barrier = threading.Barrier(n)

    def worker():
        barrier.wait()
        store.spend(10)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.snapshot().balance == 1000 - 10 * n
    assert _read_state(path) == (1000 - 10 * n, 0)


def test_concurrent_mixed_operations_keep_disk_in_sync(store, path):
    store.set_balance(0)
    errors = []

    def spender():
        for _ in range(25):
            store.spend(1)

    def budgeter():
        for b in range(25):
            try:
                store.set_budget(b)
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

    threads = [threading.Thread(target=spender) for _ in range(4)]
    threads.append(threading.Thread(target=budgeter))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    snap = store.snapshot()
    # 4*25 spends of 1, budget moved 0 -> 24 credits 24
    assert snap == LedgerState(balance=-100 + 24, budget=24)
    assert _read_state(path) == (snap.balance, snap.budget)


def test_dir_fsync_failure_after_rename_still_commits(store, path, monkeypatch):
    store.set_balance(10)

    def broken_fsync(_path):
        raise OSError("EIO")

    monkeypatch.setattr(ledger, "_fsync_dir_for_path", broken_fsync)
    before = REGISTRY.get_sample_value("budget_persist_dir_sync_fail_total") or 0.0

    state = store.set_balance(99)

    assert state == store.snapshot() == LedgerState(balance=99, budget=0)
    assert _read_state(path) == (99, 0)
    assert REGISTRY.get_sample_value("budget_persist_dir_sync_fail_total") == before + 1


def test_failed_legacy_rewrite_is_fatal(path, monkeypatch):
    with open(path, "wb") as f:
        f.write(struct.pack("<i", 777))

    def broken_write(_path, _data):
        raise OSError("read-only file system")

    monkeypatch.setattr(ledger, "_write_atomic", broken_write)
    s = LedgerStore(path)
    with pytest.raises(PersistenceError):
        s.load()
    assert s.snapshot() == LedgerState(0, 0)
    assert os.path.getsize(path) == 4


def test_quarantine_twice_in_one_second_keeps_both_files(path, monkeypatch):
    monkeypatch.setattr(ledger.time, "time", lambda: 1_700_000_000.0)
    targets = []
    for fill in (b"\x01", b"\x02"):
        with open(path, "wb") as f:
            f.write(fill * 5)
        targets.append(load_ledger(LedgerStore(path), "quarantine"))

    assert targets[0] != targets[1]
    for target, fill in zip(targets, (b"\x01", b"\x02")):
        with open(target, "rb") as f:
            assert f.read() == fill * 5
