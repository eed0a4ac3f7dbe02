"""Database engine and session management."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from directory_snapshot.config import Settings


def ensure_sqlite_dir(database_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not database_url.startswith("sqlite") or "///" not in database_url:
        return
    db_path = database_url.split("///", 1)[-1]
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


def _casefold(value: object) -> object:
    return value.casefold() if isinstance(value, str) else value


def _register_casefold(dbapi_connection: Any, connection_record: Any) -> None:
    _ = connection_record
    dbapi_connection.create_function("casefold", 1, _casefold, deterministic=True)


def register_sqlite_functions(engine: AsyncEngine) -> None:
    """Give every SQLite connection a Unicode-aware ``casefold()`` SQL function.

    SQLite's own ``lower()`` and ``LIKE`` only fold ASCII letters. No-op for
    other dialects and safe to call more than once.
    """
    sync_engine = engine.sync_engine
    if sync_engine.dialect.name != "sqlite":
        return
    if not event.contains(sync_engine, "connect", _register_casefold):
        event.listen(sync_engine, "connect", _register_casefold)


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    ensure_sqlite_dir(settings.database_url)
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    register_sqlite_functions(engine)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory
