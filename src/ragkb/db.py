from functools import lru_cache
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

from ragkb.config import get_settings


class Base(DeclarativeBase):
    pass


def _ensure_sqlite_parent(database_url: str) -> None:
    prefix, _, path = database_url.partition(":///")
    if not prefix.startswith("sqlite") or not path or path == ":memory:":
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    _ensure_sqlite_parent(settings.database_url)
    return create_engine(
        settings.database_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
    )


def create_schema(engine: Engine | None = None) -> None:
    from ragkb import models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(bind=engine or get_engine())
