import sys
from pathlib import Path

import pytest

# Ensure the repository root is on the import path so the flat modules import.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import create_session_factory, init_db  # noqa: E402


@pytest.fixture
def session_factory():
    factory = create_session_factory("sqlite://")
    init_db(factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
