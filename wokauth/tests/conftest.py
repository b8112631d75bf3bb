"""
Pytest configuration for wokauth. In-memory SQLite and a fixed signing secret, set before
any wokauth module reads the environment.
"""
import os

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["AUTH_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-signing-secret-0123456789abcdef"
# Tests always use the in-process key-value store
os.environ.pop("REDIS_URL", None)

import pytest

from wokauth import rate_limit
from wokauth.database import SessionLocal, engine
from wokauth.models import Base


@pytest.fixture
def db():
    """Fresh tables per test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    rate_limit.reset()
    yield
    rate_limit.reset()
