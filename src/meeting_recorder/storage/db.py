"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine
- Контекстный менеджер для сессий
- Единая точка доступа к БД для всех сервисов

Важно:
- сессии короткие: одна логическая запись = одна транзакция
- фоновые прогоны пайплайна живут в потоках, поэтому для SQLite
  включаем check_same_thread=False
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from meeting_recorder.common.config import get_settings


def _build_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in dsn or dsn.rstrip("/") in {"sqlite:", "sqlite+pysqlite:"}:
            # одна in-memory БД на все потоки
            kwargs["poolclass"] = StaticPool
        eng = create_engine(dsn, **kwargs)

        @event.listens_for(eng, "connect")
        def _sqlite_fk_on(dbapi_conn, _record) -> None:
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        return eng

    return create_engine(dsn, pool_pre_ping=True)


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
_settings = get_settings()

engine = _build_engine(_settings.postgres_dsn)

SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session() -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema() -> None:
    """Создание таблиц без alembic (dev/тесты)."""
    from .models import Base

    Base.metadata.create_all(bind=engine)


def drop_schema() -> None:
    from .models import Base

    Base.metadata.drop_all(bind=engine)
