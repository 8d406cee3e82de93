from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ragkb.config import get_settings
from ragkb.db import create_schema, get_engine
from ragkb.main import app


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    data = tmp_path / "data"
    monkeypatch.setenv("RAGKB_DATA_DIR", str(data))
    monkeypatch.setenv("RAGKB_DATABASE_URL", f"sqlite+pysqlite:///{tmp_path / 'ragkb-tests.db'}")
    monkeypatch.setenv("RAGKB_DB_ECHO", "false")
    monkeypatch.setenv("RAGKB_STORE_BACKEND", "sqlite")
    monkeypatch.delenv("RAGKB_STORE_PATH", raising=False)
    monkeypatch.delenv("RAGKB_LEDGER_PATH", raising=False)
    return data


@pytest.fixture
def client(data_dir: Path) -> Iterator[TestClient]:
    engine = get_engine()
    create_schema(engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    engine.dispose()
