from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from marketplace.core.config import settings
import os
import logging

logger = logging.getLogger(__name__)

if os.getenv("PYTEST_RUN") == "1":
    SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
else:
    SQLALCHEMY_DATABASE_URL = settings.SQLALCHEMY_DATABASE_URL


def build_engine(url: str, sqlite_timeout: float = 15.0) -> Engine:
    """Create an engine tuned for the ledger's short conditional-update transactions.

    SQLite connections wait up to ``sqlite_timeout`` seconds on a locked
    database instead of failing, so concurrent accepts queue behind each
    other and the loser sees a zero row count rather than an error.
    """
    pool_kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": sqlite_timeout}
    else:
        connect_args = {}
        pool_kwargs.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE") or 6),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW") or 6),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE") or 300),
            "pool_timeout": float(os.getenv("DB_POOL_TIMEOUT") or 5.0),
        })

    eng = create_engine(url, connect_args=connect_args, **pool_kwargs)

    if url.startswith("sqlite"):
        busy_ms = int(sqlite_timeout * 1000)

        @event.listens_for(eng, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ANN001
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute(f"PRAGMA busy_timeout={busy_ms};")
                cursor.execute("PRAGMA foreign_keys=ON;")
            finally:
                cursor.close()

    return eng


engine = build_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


# Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
