# conftest.py
import itertools
from datetime import datetime

import pytest
from sqlalchemy.pool import StaticPool

from coach.database.database import DatabaseConnection, transaction

_user_ids = itertools.count(10000)


@pytest.fixture(scope="session", autouse=True)
def test_db():
    """Create and configure the test database."""
    test_db = DatabaseConnection(
        url="sqlite:///:memory:",
        connect_args={
            "check_same_thread": False
        },
        poolclass=StaticPool
    )

    # Create tables
    test_db.create_tables()

    # Make this database connection the global instance
    import coach.database.database as db_module
    db_module.conn = test_db

    return test_db


@pytest.fixture
def add_rows():
    """Insert rows straight into the store, bypassing the chat pipeline."""
    def _add(*rows):
        with transaction() as db:
            db.add_all(rows)
    return _add


@pytest.fixture
def user_id_generator():
    """Generate user IDs that are unique across the whole test session."""
    def _generate():
        return f"user-{next(_user_ids)}"
    return _generate


@pytest.fixture
def now():
    return datetime(2024, 5, 15, 10, 30)
