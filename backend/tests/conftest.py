from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from memory import MemoryService, SQLiteMemoryDB  # noqa: E402
from memory.models import SessionContext  # noqa: E402
from triage_core import ConversationEngine  # noqa: E402


@pytest.fixture
def memory_service(tmp_path) -> MemoryService:
    return MemoryService(SQLiteMemoryDB(str(tmp_path / "healthbuddy-unit.sqlite")))


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(user_id="user-a", session_key="session-user-a")


@pytest.fixture
def other_session() -> SessionContext:
    return SessionContext(user_id="user-b", session_key="session-user-b")


@pytest.fixture
def engine(memory_service) -> ConversationEngine:
    return ConversationEngine(memory_service)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "healthbuddy-test.sqlite"
    monkeypatch.setenv("HEALTHBUDDY_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    # Keep CI deterministic; the model classifier has its own tests.
    monkeypatch.setenv("HEALTHBUDDY_CLASSIFIER", "rules")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    def _make(user_id: str, session_key: str = "session-a") -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}", "X-Session-Key": session_key}

    return _make
