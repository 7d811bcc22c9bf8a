from sqlalchemy import create_engine, event
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL


def create_db_engine(url: str = DATABASE_URL, echo: bool = False):
    """Create the engine; SQLite connections get foreign keys switched on."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    # LIKE is case-insensitive by default; `mode: insensitive` lowers both sides instead
    cursor.execute("PRAGMA case_sensitive_like=ON")
    cursor.close()
