"""
Pytest configuration and shared fixtures.

Test settings come from the environment; defaults point at a throwaway
SQLite file. Settings are reloaded with these values before any app import.
"""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_roomchat.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from roomchat.config import get_settings
get_settings.cache_clear()

from roomchat import models  # noqa: E402,F401  register tables
from roomchat.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def db():
    """Session on a freshly created schema, dropped after the test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
