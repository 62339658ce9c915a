from __future__ import annotations

import os
from typing import Callable, List

import pytest
from fastapi.testclient import TestClient

from budget.config import Settings
from budget.service_http import ServiceContext, build_context, create_app

USERS = ("alice", "bob")


def _reader(path: str) -> Callable[[], List[str]]:
    def read() -> List[str]:
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as f:
            return f.read().splitlines()

    return read


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("BUDGET_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def users_file(tmp_path) -> str:
    path = tmp_path / "users"
    path.write_text("\n".join(USERS) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def settings(tmp_path, users_file) -> Settings:
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return Settings(
        data_file=str(state_dir / "budget.dat"),
        users_file=users_file,
        log_dir=str(tmp_path / "logs"),
        cert_file=str(tmp_path / "cert.pem"),
        key_file=str(tmp_path / "key.pem"),
    )


@pytest.fixture
def tx_lines(settings) -> Callable[[], List[str]]:
    return _reader(settings.transaction_log_path)


@pytest.fixture
def unauth_lines(settings) -> Callable[[], List[str]]:
    return _reader(settings.unauthorized_log_path)


@pytest.fixture
def context(settings) -> ServiceContext:
    ctx = build_context(settings)
    yield ctx
    ctx.close()


@pytest.fixture
def client(context) -> TestClient:
    with TestClient(create_app(context)) as c:
        yield c
