"""
Database engine and session for the auth service. SQLite by default.
"""
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from wokauth.config import DATABASE_URL
from wokauth.models import Base


def _enable_foreign_keys(dbapi_connection, connection_record):
    # oauth_accounts.user_id ON DELETE CASCADE is only enforced with this pragma
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str) -> Engine:
    """Engine for url. SQLite connections are shared across request threads and enforce foreign keys."""
    if not url.startswith("sqlite"):
        return create_engine(url)
    options = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url:
        # one connection, so every session sees the same in-memory database
        options["poolclass"] = StaticPool
    sqlite_engine = create_engine(url, **options)
    event.listen(sqlite_engine, "connect", _enable_foreign_keys)
    return sqlite_engine


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Dependency: yield a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
